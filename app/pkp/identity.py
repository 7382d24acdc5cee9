"""Identity normalization and auth-method-id derivation.

A verified identity claim is reduced to a canonical string
``authMethodType:subjectId:audience`` and from there to an
AuthMethodHandle: the auth-method namespace plus a 32-byte keccak-256
digest. The digest input is the UTF-8 encoding of ``subjectId:audience``,
byte-identical to the ids already stored in the ledger, so handles of
existing identities keep resolving.
"""

from dataclasses import dataclass
from enum import Enum

from app.pkp.exceptions import InvalidClaimError
from app.pkp.keccak import keccak256


class AuthMethodType(str, Enum):
    """Auth method namespaces understood by the key registry."""
    ETH_WALLET = "EthWallet"
    WEBAUTHN = "WebAuthn"
    OAUTH_DISCORD = "OAuthDiscord"
    OAUTH_GOOGLE = "OAuthGoogle"
    OTHER = "Other"

    @property
    def registry_code(self) -> int:
        """Numeric auth method type recorded on the ledger."""
        return _REGISTRY_CODES[self]


_REGISTRY_CODES = {
    AuthMethodType.ETH_WALLET: 1,
    AuthMethodType.WEBAUTHN: 3,
    AuthMethodType.OAUTH_DISCORD: 4,
    AuthMethodType.OAUTH_GOOGLE: 6,
    AuthMethodType.OTHER: 0,
}


@dataclass(frozen=True)
class IdentityClaim:
    """Verified subject/audience pair from an identity provider.

    Produced by an IdentityVerifier; trusted as-is by the pipeline.
    """
    subject_id: str
    audience: str
    auth_method_type: AuthMethodType = AuthMethodType.OAUTH_GOOGLE


@dataclass(frozen=True)
class AuthMethodHandle:
    """Deterministic key namespace for one identity."""
    auth_method_type: AuthMethodType
    auth_method_id: bytes

    @property
    def id_hex(self) -> str:
        return "0x" + self.auth_method_id.hex()

    @property
    def key(self) -> str:
        """Stable string form, used for per-handle locking and logging."""
        return f"{self.auth_method_type.value}:{self.id_hex}"

    def __str__(self) -> str:
        return self.key


def _coerce_type(value) -> AuthMethodType:
    if isinstance(value, AuthMethodType):
        return value
    try:
        return AuthMethodType(value)
    except ValueError:
        raise InvalidClaimError(f"Unknown auth method type: {value!r}")


def normalize_claim(claim: IdentityClaim) -> str:
    """Return the canonical ``type:subject:audience`` string for a claim.

    Raises:
        InvalidClaimError: If subject or audience is empty, or the type is unknown.
    """
    auth_type = _coerce_type(claim.auth_method_type)
    if not isinstance(claim.subject_id, str) or not claim.subject_id.strip():
        raise InvalidClaimError("Identity claim has empty subject")
    if not isinstance(claim.audience, str) or not claim.audience.strip():
        raise InvalidClaimError("Identity claim has empty audience")
    return f"{auth_type.value}:{claim.subject_id}:{claim.audience}"


def derive_auth_method_id(canonical: str) -> AuthMethodHandle:
    """Derive the AuthMethodHandle for a canonical identity string.

    The type prefix selects the namespace; the remainder
    (``subject:audience``) is hashed with keccak-256.

    Raises:
        InvalidClaimError: If the string is not canonical or cannot be encoded.
    """
    auth_type, sep, body = canonical.partition(":")
    if not sep or not body:
        raise InvalidClaimError(f"Not a canonical identity string: {canonical!r}")
    try:
        data = body.encode("utf-8")
    except UnicodeEncodeError as e:
        raise InvalidClaimError(f"Identity claim is not encodable: {e.reason}")
    return AuthMethodHandle(
        auth_method_type=_coerce_type(auth_type),
        auth_method_id=keccak256(data),
    )


def handle_for_claim(claim: IdentityClaim) -> AuthMethodHandle:
    """normalize_claim followed by derive_auth_method_id."""
    return derive_auth_method_id(normalize_claim(claim))
