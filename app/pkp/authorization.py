"""Authorization sessions for acting as a PKP's wallet.

A session is a short-lived capability obtained from the signing network
immediately before registry-mutating calls and released right after.
Sessions are never persisted and their credentials never logged.

Two providers are available:
- HttpAuthorizationProvider: asks the signing network over HTTP.
- LocalAuthorizationProvider: issues random, time-bounded credentials
  itself; pairs with the in-memory registry for development and tests.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from app.core.config import (
    AUTH_NETWORK_URL,
    SESSION_TTL_SECONDS,
    UPSTREAM_API_KEY,
    UPSTREAM_TIMEOUT_SECONDS,
)
from app.pkp.exceptions import AuthorizationUnavailableError

log = logging.getLogger(__name__)


# =============================================================================
# SESSION DATACLASS
# =============================================================================


@dataclass
class AuthorizationSession:
    """Time-bounded capability to act as one key's wallet.

    Attributes:
        session_id: Identifier used to release the session
        key_id: The PKP this session authorizes
        expires_at: Hard expiry; an expired session must not be used
        credentials: Opaque proof presented to the registry
    """

    session_id: str
    key_id: str
    expires_at: datetime
    credentials: str = field(repr=False)

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at

    @property
    def ttl_seconds(self) -> int:
        remaining = (self.expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(0, int(remaining))


# =============================================================================
# PROVIDER INTERFACE
# =============================================================================


class AuthorizationProvider(ABC):
    """Source of AuthorizationSessions."""

    @abstractmethod
    async def obtain_session(self, key_id: str) -> AuthorizationSession:
        """Obtain a session for key_id.

        Raises:
            AuthorizationUnavailableError: If the capability cannot be obtained.
        """
        ...

    async def release_session(self, session: AuthorizationSession) -> None:
        """Give the session back early. Expiry covers providers that cannot."""
        return None


# =============================================================================
# LOCAL PROVIDER
# =============================================================================


class LocalAuthorizationProvider(AuthorizationProvider):
    """Issues sessions locally for the in-memory registry.

    Credentials are generated per session; nothing is embedded.
    """

    def __init__(self, ttl_seconds: int = SESSION_TTL_SECONDS) -> None:
        self._ttl_seconds = ttl_seconds
        self._sessions: dict[str, AuthorizationSession] = {}
        self._lock = asyncio.Lock()
        self.unavailable = False
        self.issued_count = 0

    async def obtain_session(self, key_id: str) -> AuthorizationSession:
        if self.unavailable:
            raise AuthorizationUnavailableError(f"No signing capability for {key_id}")

        now = datetime.now(timezone.utc)
        session = AuthorizationSession(
            session_id=secrets.token_urlsafe(16),
            key_id=key_id,
            expires_at=now + timedelta(seconds=self._ttl_seconds),
            credentials=secrets.token_urlsafe(32),
        )
        async with self._lock:
            self._evict_expired()
            self._sessions[session.session_id] = session
            self.issued_count += 1

        log.debug(f"Issued session {session.session_id[:8]}... for {key_id}")
        return session

    async def release_session(self, session: AuthorizationSession) -> None:
        async with self._lock:
            self._sessions.pop(session.session_id, None)
            self._evict_expired()

    def _evict_expired(self) -> None:
        expired = [sid for sid, s in self._sessions.items() if s.is_expired]
        for sid in expired:
            del self._sessions[sid]

    def is_valid(self, session: AuthorizationSession, key_id: str) -> bool:
        """True if session was issued here, is live, and covers key_id."""
        issued = self._sessions.get(session.session_id)
        return (
            issued is not None
            and secrets.compare_digest(issued.credentials, session.credentials)
            and issued.key_id == key_id
            and not issued.is_expired
        )

    @property
    def active_count(self) -> int:
        return len(self._sessions)


# =============================================================================
# HTTP PROVIDER
# =============================================================================


class HttpAuthorizationProvider(AuthorizationProvider):
    """Obtains sessions from the signing network's HTTP gateway.

    POST {base}/sessions {"keyId": ...}
        -> {"sessionId", "credentials", "expiresAt"}
    DELETE {base}/sessions/{sessionId}
    """

    def __init__(
        self,
        base_url: str = AUTH_NETWORK_URL,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        api_key: str = UPSTREAM_API_KEY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=self._headers,
            transport=self._transport,
        )

    async def obtain_session(self, key_id: str) -> AuthorizationSession:
        try:
            async with self._client() as client:
                resp = await client.post("/sessions", json={"keyId": key_id})
        except httpx.RequestError as e:
            raise AuthorizationUnavailableError(
                f"Signing network unreachable: {type(e).__name__}"
            )

        if not resp.is_success:
            raise AuthorizationUnavailableError(
                f"Signing network refused session for {key_id}: HTTP {resp.status_code}"
            )

        try:
            body = resp.json()
            expires_at = datetime.fromisoformat(body["expiresAt"].replace("Z", "+00:00"))
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            session = AuthorizationSession(
                session_id=body["sessionId"],
                key_id=key_id,
                expires_at=expires_at,
                credentials=body["credentials"],
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise AuthorizationUnavailableError(f"Malformed session response: {e}")

        if session.is_expired:
            raise AuthorizationUnavailableError(f"Signing network issued an expired session for {key_id}")
        return session

    async def release_session(self, session: AuthorizationSession) -> None:
        try:
            async with self._client() as client:
                await client.delete(f"/sessions/{session.session_id}")
        except httpx.RequestError as e:
            # Release is advisory; the session still lapses at expires_at
            log.warning(f"Failed to release session {session.session_id[:8]}...: {e}")


# =============================================================================
# GLOBAL SINGLETON
# =============================================================================

_provider: AuthorizationProvider | None = None


def get_authorization_provider() -> AuthorizationProvider:
    """Get the global authorization provider instance."""
    global _provider

    if _provider is None:
        if AUTH_NETWORK_URL:
            _provider = HttpAuthorizationProvider()
            log.info(f"Initialized HTTP authorization provider ({AUTH_NETWORK_URL})")
        else:
            _provider = LocalAuthorizationProvider()
            log.info("Initialized local authorization provider")

    return _provider


def reset_authorization_provider() -> None:
    """Reset the global provider (for testing)."""
    global _provider
    _provider = None
