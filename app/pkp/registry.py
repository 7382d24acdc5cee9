"""Key registry capability interface and implementations.

The registry (a PKP ledger behind a gateway) is the system of record for
keys and their permitted controllers. The core only sees it through the
narrow KeyRegistry interface:

- mint(handle) / list_keys(handle)
- list_controllers(key_id)
- grant_controller / revoke_controller / retire (require a session)

HttpKeyRegistry speaks to a registry gateway over httpx. InMemoryKeyRegistry
is the mock registry used for local development and tests; it supports
fault injection, visibility lag and mint latency so retry and concurrency
behaviour can be exercised.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Optional
from urllib.parse import quote

import httpx

from app.core.config import (
    OAUTH_AUTH_METHOD_PUBKEY,
    REGISTRY_URL,
    UPSTREAM_API_KEY,
    UPSTREAM_TIMEOUT_SECONDS,
)
from app.pkp.authorization import AuthorizationSession, LocalAuthorizationProvider
from app.pkp.exceptions import (
    DuplicateMintError,
    RegistryRejectedError,
    RegistryUnavailableError,
    UpstreamTimeoutError,
)
from app.pkp.identity import AuthMethodHandle
from app.pkp.keccak import hex_to_bytes, keccak256, public_key_to_address, to_checksum_address

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyRecord:
    """One minted key bound to an auth method handle."""

    key_id: str  # Registry token id
    public_key: bytes  # Uncompressed secp256k1 public key
    controller_address: str  # EIP-55 address of the PKP wallet
    mint_sequence: int  # Issuance order for the handle
    retired: bool = False
    mint_tx: Optional[str] = None  # Mint transaction / request id

    @property
    def public_key_hex(self) -> str:
        return "0x" + self.public_key.hex()

    @classmethod
    def from_registry(cls, data: dict[str, Any]) -> "KeyRecord":
        """Build a record from a gateway JSON object.

        Raises:
            RegistryRejectedError: If required fields are missing or malformed.
        """
        try:
            public_key = hex_to_bytes(data["publicKey"])
            address = data.get("ethAddress")
            address = (
                to_checksum_address(address) if address
                else public_key_to_address(public_key)
            )
            return cls(
                key_id=str(data["tokenId"]),
                public_key=public_key,
                controller_address=address,
                mint_sequence=int(data["mintSequence"]),
                retired=bool(data.get("retired", False)),
                mint_tx=data.get("mintTx"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RegistryRejectedError(f"Malformed key record from registry: {e}")


class KeyRegistry(ABC):
    """Narrow capability interface over the external key ledger."""

    name: str = "registry"

    @abstractmethod
    async def mint(self, handle: AuthMethodHandle) -> KeyRecord:
        """Mint a new key for handle.

        Raises:
            DuplicateMintError: If the registry refuses a second key for handle.
        """
        ...

    @abstractmethod
    async def list_keys(self, handle: AuthMethodHandle) -> list[KeyRecord]:
        """All keys ever minted for handle, possibly unordered."""
        ...

    @abstractmethod
    async def list_controllers(self, key_id: str) -> list[str]:
        """Currently permitted controller addresses of key_id."""
        ...

    @abstractmethod
    async def grant_controller(self, key_id: str, address: str, session: AuthorizationSession) -> None:
        ...

    @abstractmethod
    async def revoke_controller(self, key_id: str, address: str, session: AuthorizationSession) -> None:
        ...

    @abstractmethod
    async def retire(self, key_id: str, session: AuthorizationSession) -> bool:
        """Burn key_id. Returns False if it was already retired."""
        ...


# =============================================================================
# IN-MEMORY REGISTRY
# =============================================================================


class InMemoryKeyRegistry(KeyRegistry):
    """Process-local registry used in mock mode and tests.

    Sessions are checked against the LocalAuthorizationProvider that
    issued them. Every mutating call that reaches the ledger is appended
    to ``calls`` as (op, key_id, address). Duplicate mints for a handle
    are accepted unless reject_duplicate_mints is set, so callers must
    serialize mints themselves.
    """

    name = "memory"

    def __init__(
        self,
        authorizer: Optional[LocalAuthorizationProvider] = None,
        reject_duplicate_mints: bool = False,
        initial_controllers: Optional[list[str]] = None,
    ) -> None:
        self._authorizer = authorizer
        self._reject_duplicate_mints = reject_duplicate_mints
        self._initial_controllers = [to_checksum_address(a) for a in initial_controllers or []]
        self._keys: dict[str, list[KeyRecord]] = {}
        self._handles: dict[str, str] = {}  # key_id -> handle key
        self._controllers: dict[str, list[str]] = {}
        self._hidden: dict[str, int] = {}  # key_id -> list_keys calls left hidden
        self._faults: dict[str, list[Exception]] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()
        self.calls: list[tuple[str, str, Optional[str]]] = []
        self.mint_latency: float = 0.0
        self.visibility_lag: int = 0

    # -- test hooks -----------------------------------------------------------

    def inject_fault(self, op: str, error: Exception, count: int = 1) -> None:
        """Make the next `count` calls of op raise error."""
        self._faults.setdefault(op, []).extend([error] * count)

    def _maybe_fail(self, op: str) -> None:
        pending = self._faults.get(op)
        if pending:
            raise pending.pop(0)

    def set_controllers(self, key_id: str, addresses: list[str]) -> None:
        """Seed controllers directly, bypassing sessions."""
        self._controllers[key_id] = [to_checksum_address(a) for a in addresses]

    @property
    def mutating_calls(self) -> list[tuple[str, str, Optional[str]]]:
        return [c for c in self.calls if c[0] != "mint"]

    # -- KeyRegistry ----------------------------------------------------------

    def _check_session(self, key_id: str, session: AuthorizationSession) -> None:
        if self._authorizer is not None:
            valid = self._authorizer.is_valid(session, key_id)
        else:
            valid = session.key_id == key_id and not session.is_expired
        if not valid:
            raise RegistryRejectedError(f"Session not valid for {key_id}", status_code=403)

    def _require_key(self, key_id: str) -> KeyRecord:
        handle_key = self._handles.get(key_id)
        if handle_key is None:
            raise RegistryRejectedError(f"Unknown key: {key_id}", status_code=404)
        return next(k for k in self._keys[handle_key] if k.key_id == key_id)

    async def mint(self, handle: AuthMethodHandle) -> KeyRecord:
        self._maybe_fail("mint")
        if self.mint_latency:
            await asyncio.sleep(self.mint_latency)
        async with self._lock:
            existing = [k for k in self._keys.get(handle.key, []) if not k.retired]
            if existing and self._reject_duplicate_mints:
                raise DuplicateMintError(f"Handle {handle.key} already has key {existing[0].key_id}")

            self._sequence += 1
            public_key = b"\x04" + secrets.token_bytes(64)
            record = KeyRecord(
                key_id="0x" + keccak256(public_key).hex(),
                public_key=public_key,
                controller_address=public_key_to_address(public_key),
                mint_sequence=self._sequence,
                mint_tx="0x" + secrets.token_hex(32),
            )
            self._keys.setdefault(handle.key, []).append(record)
            self._handles[record.key_id] = handle.key
            self._controllers[record.key_id] = list(self._initial_controllers)
            if self.visibility_lag:
                self._hidden[record.key_id] = self.visibility_lag
            self.calls.append(("mint", record.key_id, None))
        # Simulates a mint that landed but whose response was lost
        self._maybe_fail("mint.lost_response")
        return record

    async def list_keys(self, handle: AuthMethodHandle) -> list[KeyRecord]:
        self._maybe_fail("list_keys")
        visible = []
        for record in self._keys.get(handle.key, []):
            lag = self._hidden.get(record.key_id, 0)
            if lag:
                self._hidden[record.key_id] = lag - 1
                continue
            visible.append(record)
        return visible

    async def list_controllers(self, key_id: str) -> list[str]:
        self._maybe_fail("list_controllers")
        self._require_key(key_id)
        return list(self._controllers.get(key_id, []))

    async def grant_controller(self, key_id: str, address: str, session: AuthorizationSession) -> None:
        self._maybe_fail("grant_controller")
        self._check_session(key_id, session)
        if self._require_key(key_id).retired:
            raise RegistryRejectedError(f"Key {key_id} is retired", status_code=410)
        address = to_checksum_address(address)
        controllers = self._controllers.setdefault(key_id, [])
        if address not in controllers:
            controllers.append(address)
        self.calls.append(("grant", key_id, address))

    async def revoke_controller(self, key_id: str, address: str, session: AuthorizationSession) -> None:
        self._maybe_fail("revoke_controller")
        self._check_session(key_id, session)
        address = to_checksum_address(address)
        controllers = self._controllers.setdefault(key_id, [])
        if address in controllers:
            controllers.remove(address)
        self.calls.append(("revoke", key_id, address))

    async def retire(self, key_id: str, session: AuthorizationSession) -> bool:
        self._maybe_fail("retire")
        self._check_session(key_id, session)
        record = self._require_key(key_id)
        if record.retired:
            return False
        keys = self._keys[self._handles[key_id]]
        keys[keys.index(record)] = replace(record, retired=True)
        self.calls.append(("retire", key_id, None))
        return True


# =============================================================================
# HTTP REGISTRY
# =============================================================================


class HttpKeyRegistry(KeyRegistry):
    """Registry gateway client.

    Endpoints:
        POST   /pkps/mint
        GET    /auth-methods/{type}/{id}/pkps
        GET    /pkps/{key_id}/permitted-addresses
        POST   /pkps/{key_id}/permitted-addresses
        DELETE /pkps/{key_id}/permitted-addresses/{address}
        POST   /pkps/{key_id}/burn

    Status mapping: connection errors, 429 and 5xx are transient
    (RegistryUnavailableError); timeouts are UpstreamTimeoutError;
    409 on mint is DuplicateMintError; 409 on grant (already permitted)
    and 404 on revoke (not permitted) are success, since both are the
    requested end state; other 4xx are RegistryRejectedError.
    """

    name = "http"

    def __init__(
        self,
        base_url: str = REGISTRY_URL,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        api_key: str = UPSTREAM_API_KEY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        session: Optional[AuthorizationSession] = None,
    ) -> httpx.Response:
        headers = {}
        if session is not None:
            headers["X-Session-Id"] = session.session_id
            headers["X-Session-Credentials"] = session.credentials
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Registry {method} {path} timed out: {type(e).__name__}")
        except httpx.RequestError as e:
            raise RegistryUnavailableError(f"Registry {method} {path} failed: {type(e).__name__}")

        log.debug(f"registry {method} {path}: status={resp.status_code}")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RegistryUnavailableError(f"Registry {method} {path}: HTTP {resp.status_code}")
        return resp

    @staticmethod
    def _reject(resp: httpx.Response, what: str) -> RegistryRejectedError:
        try:
            detail = resp.json().get("error", resp.text)
        except ValueError:
            detail = resp.text
        return RegistryRejectedError(
            f"{what} rejected: HTTP {resp.status_code} {detail}".strip(),
            status_code=resp.status_code,
        )

    @staticmethod
    def _json(resp: httpx.Response, what: str) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            raise RegistryRejectedError(f"{what}: registry returned non-JSON body")
        if not isinstance(body, dict):
            raise RegistryRejectedError(f"{what}: registry returned unexpected JSON")
        return body

    async def mint(self, handle: AuthMethodHandle) -> KeyRecord:
        resp = await self._request(
            "POST",
            "/pkps/mint",
            json={
                "authMethodType": handle.auth_method_type.registry_code,
                "authMethodId": handle.id_hex,
                "authMethodPubkey": OAUTH_AUTH_METHOD_PUBKEY,
            },
        )
        if resp.status_code == 409:
            raise DuplicateMintError(f"Registry already holds a key for {handle.key}")
        if not resp.is_success:
            raise self._reject(resp, "mint")
        body = self._json(resp, "mint")
        pkp = dict(body.get("pkp") or {})
        pkp.setdefault("mintTx", body.get("requestId"))
        return KeyRecord.from_registry(pkp)

    async def list_keys(self, handle: AuthMethodHandle) -> list[KeyRecord]:
        path = f"/auth-methods/{handle.auth_method_type.registry_code}/{handle.id_hex}/pkps"
        resp = await self._request("GET", path)
        if resp.status_code == 404:
            return []
        if not resp.is_success:
            raise self._reject(resp, "list_keys")
        return [KeyRecord.from_registry(p) for p in self._json(resp, "list_keys").get("pkps", [])]

    async def list_controllers(self, key_id: str) -> list[str]:
        resp = await self._request("GET", f"/pkps/{quote(key_id)}/permitted-addresses")
        if not resp.is_success:
            raise self._reject(resp, "list_controllers")
        addresses = self._json(resp, "list_controllers").get("addresses", [])
        try:
            return [to_checksum_address(a) for a in addresses]
        except ValueError as e:
            raise RegistryRejectedError(f"Registry returned malformed address: {e}")

    async def grant_controller(self, key_id: str, address: str, session: AuthorizationSession) -> None:
        resp = await self._request(
            "POST",
            f"/pkps/{quote(key_id)}/permitted-addresses",
            json={"address": address},
            session=session,
        )
        # 409: already permitted, e.g. a retried grant whose response was lost
        if resp.status_code != 409 and not resp.is_success:
            raise self._reject(resp, f"grant {address}")

    async def revoke_controller(self, key_id: str, address: str, session: AuthorizationSession) -> None:
        resp = await self._request(
            "DELETE",
            f"/pkps/{quote(key_id)}/permitted-addresses/{address}",
            session=session,
        )
        # 404: not permitted any more, which is the requested end state
        if resp.status_code != 404 and not resp.is_success:
            raise self._reject(resp, f"revoke {address}")

    async def retire(self, key_id: str, session: AuthorizationSession) -> bool:
        resp = await self._request("POST", f"/pkps/{quote(key_id)}/burn", session=session)
        if resp.status_code == 410:
            return False
        if not resp.is_success:
            raise self._reject(resp, "retire")
        return bool(self._json(resp, "retire").get("retired", True))


# =============================================================================
# GLOBAL SINGLETON
# =============================================================================

_registry: KeyRegistry | None = None


def get_key_registry() -> KeyRegistry:
    """Get or create the key registry singleton.

    Raises:
        RuntimeError: If no registry URL is configured and mock mode is off.
    """
    global _registry
    if _registry is None:
        from app.core.config import MOCK_REGISTRY_ENABLED
        from app.pkp.authorization import get_authorization_provider

        if REGISTRY_URL:
            _registry = HttpKeyRegistry()
            log.info(f"Using HTTP key registry at {REGISTRY_URL}")
        elif MOCK_REGISTRY_ENABLED:
            provider = get_authorization_provider()
            authorizer = provider if isinstance(provider, LocalAuthorizationProvider) else None
            _registry = InMemoryKeyRegistry(authorizer=authorizer)
            log.warning("PKP_REGISTRY_URL not set: using in-memory key registry")
        else:
            raise RuntimeError("PKP_REGISTRY_URL is required when PKP_MOCK_REGISTRY_ENABLED=false")
    return _registry


def reset_key_registry() -> None:
    """Reset the singleton (for testing)."""
    global _registry
    _registry = None
