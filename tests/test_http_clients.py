"""Tests for the HTTP registry gateway and authorization network clients.

Both clients accept an httpx transport, so the upstreams are simulated
with httpx.MockTransport.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.pkp.authorization import AuthorizationSession, HttpAuthorizationProvider
from app.pkp.exceptions import (
    AuthorizationUnavailableError,
    DuplicateMintError,
    RegistryRejectedError,
    RegistryUnavailableError,
    UpstreamTimeoutError,
)
from app.pkp.keccak import public_key_to_address
from app.pkp.registry import HttpKeyRegistry
from app.pkp.registry_client import KeyRegistryClient

BASE = "https://registry.test"
PUBKEY = "0x04" + "ab" * 64
A = "0x" + "11" * 20


def _pkp(token_id: str = "0x01", seq: int = 1, **extra) -> dict:
    return {"tokenId": token_id, "publicKey": PUBKEY, "mintSequence": seq, **extra}


def _session(key_id: str = "0x01") -> AuthorizationSession:
    return AuthorizationSession(
        session_id="sess-1",
        key_id=key_id,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=5),
        credentials="secret-creds",
    )


def _registry(handler) -> HttpKeyRegistry:
    return HttpKeyRegistry(base_url=BASE, timeout=1.0, api_key="api-key", transport=httpx.MockTransport(handler))


class TestHttpKeyRegistry:

    @pytest.mark.asyncio
    async def test_mint(self, handle):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"pkp": _pkp(), "requestId": "req-1"})

        key = await _registry(handler).mint(handle)

        assert seen["path"] == "/pkps/mint"
        assert seen["body"] == {
            "authMethodType": 6,
            "authMethodId": handle.id_hex,
            "authMethodPubkey": "0x",
        }
        assert seen["auth"] == "Bearer api-key"
        assert key.key_id == "0x01"
        assert key.mint_tx == "req-1"
        assert key.public_key_hex == PUBKEY
        assert key.controller_address == public_key_to_address(bytes.fromhex(PUBKEY[2:]))

    @pytest.mark.asyncio
    async def test_mint_conflict_is_duplicate(self, handle):
        registry = _registry(lambda request: httpx.Response(409, json={"error": "exists"}))
        with pytest.raises(DuplicateMintError):
            await registry.mint(handle)

    @pytest.mark.asyncio
    async def test_list_keys(self, handle):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/auth-methods/6/{handle.id_hex}/pkps"
            return httpx.Response(200, json={"pkps": [_pkp("0x02", 2), _pkp("0x01", 1, retired=True)]})

        keys = await _registry(handler).list_keys(handle)
        assert [(k.key_id, k.retired) for k in keys] == [("0x02", False), ("0x01", True)]

    @pytest.mark.asyncio
    async def test_list_keys_not_found_is_empty(self, handle):
        registry = _registry(lambda request: httpx.Response(404))
        assert await registry.list_keys(handle) == []

    @pytest.mark.asyncio
    async def test_malformed_record_is_rejected(self, handle):
        registry = _registry(lambda request: httpx.Response(200, json={"pkps": [{"tokenId": "0x01"}]}))
        with pytest.raises(RegistryRejectedError):
            await registry.list_keys(handle)

    @pytest.mark.asyncio
    async def test_list_controllers_normalizes(self):
        registry = _registry(lambda request: httpx.Response(
            200, json={"addresses": ["0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"]}
        ))
        assert await registry.list_controllers("0x01") == ["0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"]

    @pytest.mark.asyncio
    async def test_grant_sends_session(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["session"] = request.headers.get("X-Session-Id")
            seen["creds"] = request.headers.get("X-Session-Credentials")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        await _registry(handler).grant_controller("0x01", A, _session())
        assert seen == {
            "method": "POST",
            "path": "/pkps/0x01/permitted-addresses",
            "session": "sess-1",
            "creds": "secret-creds",
            "body": {"address": A},
        }

    @pytest.mark.asyncio
    async def test_grant_of_permitted_controller_is_ok(self):
        registry = _registry(lambda request: httpx.Response(409, json={"error": "already permitted"}))
        await registry.grant_controller("0x01", A, _session())

    @pytest.mark.asyncio
    async def test_retried_grant_after_lost_response(self, fast_retry):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request.url.path)
            if len(attempts) == 1:
                # Grant landed, response lost
                return httpx.Response(503)
            return httpx.Response(409, json={"error": "already permitted"})

        client = KeyRegistryClient(_registry(handler), retry=fast_retry)
        await client.grant_controller("0x01", A, _session())
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_revoke_of_absent_controller_is_ok(self):
        registry = _registry(lambda request: httpx.Response(404))
        await registry.revoke_controller("0x01", A, _session())

    @pytest.mark.asyncio
    async def test_retire(self):
        registry = _registry(lambda request: httpx.Response(200, json={"retired": True}))
        assert await registry.retire("0x01", _session()) is True

    @pytest.mark.asyncio
    async def test_retire_already_retired(self):
        registry = _registry(lambda request: httpx.Response(410))
        assert await registry.retire("0x01", _session()) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    async def test_transient_statuses(self, status):
        registry = _registry(lambda request: httpx.Response(status))
        with pytest.raises(RegistryUnavailableError):
            await registry.list_controllers("0x01")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 403, 422])
    async def test_rejection_statuses(self, status):
        registry = _registry(lambda request: httpx.Response(status, json={"error": "bad request"}))
        with pytest.raises(RegistryRejectedError) as exc_info:
            await registry.grant_controller("0x01", A, _session())
        assert exc_info.value.status_code == status
        assert "bad request" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RegistryUnavailableError):
            await _registry(handler).list_controllers("0x01")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(UpstreamTimeoutError):
            await _registry(handler).list_controllers("0x01")

    @pytest.mark.asyncio
    async def test_client_retries_transient_statuses(self, fast_retry):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request.url.path)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"addresses": [A]})

        client = KeyRegistryClient(_registry(handler), retry=fast_retry)
        assert await client.list_controllers("0x01") == [A]
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_client_does_not_retry_rejections(self, fast_retry):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request.url.path)
            return httpx.Response(400)

        client = KeyRegistryClient(_registry(handler), retry=fast_retry)
        with pytest.raises(RegistryRejectedError):
            await client.list_controllers("0x01")
        assert len(attempts) == 1


class TestHttpAuthorizationProvider:

    def _provider(self, handler) -> HttpAuthorizationProvider:
        return HttpAuthorizationProvider(
            base_url="https://auth.test", timeout=1.0, api_key="", transport=httpx.MockTransport(handler)
        )

    @pytest.mark.asyncio
    async def test_obtain_session(self):
        expires = (datetime.now(timezone.utc) + timedelta(minutes=5)).isoformat()

        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content) == {"keyId": "0x01"}
            return httpx.Response(200, json={
                "sessionId": "sess-9",
                "credentials": "creds",
                "expiresAt": expires,
            })

        session = await self._provider(handler).obtain_session("0x01")
        assert session.session_id == "sess-9"
        assert session.key_id == "0x01"
        assert not session.is_expired
        assert "creds" not in repr(session)

    @pytest.mark.asyncio
    async def test_refusal(self):
        provider = self._provider(lambda request: httpx.Response(503))
        with pytest.raises(AuthorizationUnavailableError):
            await provider.obtain_session("0x01")

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        provider = self._provider(lambda request: httpx.Response(200, json={"sessionId": "x"}))
        with pytest.raises(AuthorizationUnavailableError):
            await provider.obtain_session("0x01")

    @pytest.mark.asyncio
    async def test_expired_session_is_refused(self):
        expired = (datetime.now(timezone.utc) - timedelta(seconds=1)).isoformat()
        provider = self._provider(lambda request: httpx.Response(200, json={
            "sessionId": "x", "credentials": "c", "expiresAt": expired,
        }))
        with pytest.raises(AuthorizationUnavailableError):
            await provider.obtain_session("0x01")

    @pytest.mark.asyncio
    async def test_release_failure_is_not_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        await self._provider(handler).release_session(_session())
