"""Identity verification for incoming OAuth ID tokens.

The pipeline trusts an IdentityClaim unconditionally, so everything that
makes a claim trustworthy happens here:
- Token signature against Google's JWKS
- Algorithm is RS256
- Issuer is accounts.google.com
- Audience matches the configured client ID
- Token not expired (exp), issued in the past (iat)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import jwt
from jwt import PyJWKClient

from app.core.config import (
    GOOGLE_ALLOWED_ALGORITHMS,
    GOOGLE_CLIENT_ID,
    GOOGLE_ISSUERS,
    GOOGLE_JWKS_URL,
    UPSTREAM_TIMEOUT_SECONDS,
)
from app.pkp.exceptions import UpstreamUnavailableError, VerificationFailedError
from app.pkp.identity import AuthMethodType, IdentityClaim
from app.pkp.retry import with_deadline

log = logging.getLogger(__name__)


class IdentityVerifier(ABC):
    """Turns a raw identity token into a verified IdentityClaim."""

    @abstractmethod
    async def verify(self, raw_token: str) -> IdentityClaim:
        """
        Raises:
            VerificationFailedError: Token rejected.
            UpstreamUnavailableError: Verification keys could not be fetched.
        """
        ...


class GoogleIdTokenVerifier(IdentityVerifier):
    """Verifies Google ID tokens with PyJWT against Google's JWKS."""

    def __init__(
        self,
        client_id: str = GOOGLE_CLIENT_ID,
        jwks_url: str = GOOGLE_JWKS_URL,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        jwks_client: Optional[PyJWKClient] = None,
    ):
        self._client_id = client_id
        self._timeout = timeout
        self._jwks_client = jwks_client or PyJWKClient(jwks_url, timeout=int(max(1, timeout)))

    def _decode(self, id_token: str) -> dict:
        signing_key = self._jwks_client.get_signing_key_from_jwt(id_token)
        return jwt.decode(
            id_token,
            signing_key.key,
            algorithms=list(GOOGLE_ALLOWED_ALGORITHMS),
            audience=self._client_id,
            options={
                "require": ["exp", "iat", "aud", "iss", "sub"],
                "verify_exp": True,
                "verify_iat": True,
                "verify_nbf": True,
            },
        )

    async def verify(self, raw_token: str) -> IdentityClaim:
        if not raw_token:
            raise VerificationFailedError("Missing ID token")
        if not self._client_id:
            log.error("GOOGLE_CLIENT_ID is not configured; rejecting ID token")
            raise VerificationFailedError()

        try:
            # PyJWKClient fetches keys synchronously
            payload = await with_deadline(
                asyncio.to_thread(self._decode, raw_token),
                self._timeout,
                "google_jwks",
            )
        except jwt.PyJWKClientConnectionError as e:
            log.warning(f"Google JWKS unreachable: {e}")
            raise UpstreamUnavailableError("Google signing keys unavailable")
        except jwt.ExpiredSignatureError:
            raise VerificationFailedError("ID token expired")
        except jwt.InvalidAudienceError:
            raise VerificationFailedError("ID token audience mismatch")
        except (jwt.InvalidTokenError, jwt.PyJWKClientError) as e:
            log.info(f"ID token validation failed: {e}")
            raise VerificationFailedError()

        if payload.get("iss") not in GOOGLE_ISSUERS:
            raise VerificationFailedError("ID token issuer mismatch")

        audience = payload["aud"]
        if isinstance(audience, list):
            audience = self._client_id

        log.info(f"Successfully verified Google account userId={payload['sub']}")
        return IdentityClaim(
            subject_id=str(payload["sub"]),
            audience=str(audience),
            auth_method_type=AuthMethodType.OAUTH_GOOGLE,
        )


_verifier: IdentityVerifier | None = None


def get_identity_verifier() -> IdentityVerifier:
    """Get or create the identity verifier singleton."""
    global _verifier
    if _verifier is None:
        _verifier = GoogleIdTokenVerifier()
    return _verifier


def set_identity_verifier(verifier: IdentityVerifier | None) -> None:
    """Install a verifier (tests, alternate providers)."""
    global _verifier
    _verifier = verifier
