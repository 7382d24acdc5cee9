"""Tests for the retrying registry client and key set resolver."""

import asyncio

import pytest

from app.pkp.exceptions import (
    RegistryRejectedError,
    RegistryUnavailableError,
    UpstreamTimeoutError,
)
from app.pkp.identity import IdentityClaim, handle_for_claim
from app.pkp.registry import InMemoryKeyRegistry, KeyRecord
from app.pkp.registry_client import KeyRegistryClient
from app.pkp.resolver import KeySetResolver
from app.pkp.retry import RetryPolicy, call_with_retry


def _mints(registry: InMemoryKeyRegistry) -> list:
    return [c for c in registry.calls if c[0] == "mint"]


class TestMintIfAbsent:

    @pytest.mark.asyncio
    async def test_first_call_mints(self, client, registry, handle):
        outcome = await client.mint_if_absent(handle)
        assert outcome.minted is True
        assert outcome.key.key_id.startswith("0x")
        assert outcome.key.mint_tx is not None
        assert len(_mints(registry)) == 1

    @pytest.mark.asyncio
    async def test_second_call_returns_existing_key(self, client, registry, handle):
        first = await client.mint_if_absent(handle)
        second = await client.mint_if_absent(handle)
        assert second.minted is False
        assert second.key.key_id == first.key.key_id
        assert len(_mints(registry)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_mints_produce_one_key(self, client, registry, handle):
        registry.mint_latency = 0.01
        outcomes = await asyncio.gather(*(client.mint_if_absent(handle) for _ in range(5)))

        assert len({o.key.key_id for o in outcomes}) == 1
        assert sum(o.minted for o in outcomes) == 1
        assert len(_mints(registry)) == 1

    @pytest.mark.asyncio
    async def test_distinct_handles_mint_independently(self, client, registry):
        a = handle_for_claim(IdentityClaim("1", "client"))
        b = handle_for_claim(IdentityClaim("2", "client"))
        ka, kb = await asyncio.gather(client.mint_if_absent(a), client.mint_if_absent(b))
        assert ka.key.key_id != kb.key.key_id
        assert len(_mints(registry)) == 2

    @pytest.mark.asyncio
    async def test_minted_key_is_immediately_resolvable(self, client, registry, handle):
        """Read-your-writes holds even when the registry lags."""
        registry.visibility_lag = 2
        outcome = await client.mint_if_absent(handle)
        keys = await client.resolve_by_handle(handle)
        assert [k.key_id for k in keys] == [outcome.key.key_id]

    @pytest.mark.asyncio
    async def test_never_visible_is_transient_error(self, registry, handle, fast_retry):
        client = KeyRegistryClient(registry, retry=fast_retry, read_after_write_attempts=2, read_after_write_delay=0)
        registry.visibility_lag = 10
        with pytest.raises(RegistryUnavailableError):
            await client.mint_if_absent(handle)

    @pytest.mark.asyncio
    async def test_lost_mint_response_does_not_duplicate(self, client, registry, handle):
        """A mint that landed but whose response was lost is found on retry."""
        registry.inject_fault("mint.lost_response", RegistryUnavailableError("connection reset"))
        outcome = await client.mint_if_absent(handle)
        assert len(_mints(registry)) == 1
        assert outcome.key.key_id == _mints(registry)[0][1]

    @pytest.mark.asyncio
    async def test_lost_mint_response_with_lagging_reads(self, client, registry, handle):
        """The retry waits for a landed mint to show up instead of minting again."""
        registry.visibility_lag = 1
        registry.inject_fault("mint.lost_response", RegistryUnavailableError("lost"))

        outcome = await client.mint_if_absent(handle)

        assert len(_mints(registry)) == 1
        assert outcome.key.key_id == _mints(registry)[0][1]
        assert outcome.minted is True

    @pytest.mark.asyncio
    async def test_failed_mint_that_never_landed_is_reissued(self, client, registry, handle):
        registry.inject_fault("mint", RegistryUnavailableError("503"))

        outcome = await client.mint_if_absent(handle)

        assert outcome.minted is True
        assert len(_mints(registry)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_mint_rejection_returns_existing(self, authorizer, handle, fast_retry):
        registry = InMemoryKeyRegistry(authorizer=authorizer, reject_duplicate_mints=True)
        client = KeyRegistryClient(registry, retry=fast_retry, read_after_write_delay=0)

        # Existing key is hidden from the first listing
        registry.visibility_lag = 1
        existing = await registry.mint(handle)
        registry.visibility_lag = 0

        outcome = await client.mint_if_absent(handle)
        assert outcome.minted is False
        assert outcome.key.key_id == existing.key_id
        assert len(_mints(registry)) == 1

    @pytest.mark.asyncio
    async def test_retired_keys_are_not_reused(self, client, registry, authorizer, handle):
        first = await client.mint_if_absent(handle)
        session = await authorizer.obtain_session(first.key.key_id)
        assert await registry.retire(first.key.key_id, session) is True

        second = await client.mint_if_absent(handle)
        assert second.minted is True
        assert second.key.key_id != first.key.key_id
        assert second.key.mint_sequence > first.key.mint_sequence

    @pytest.mark.asyncio
    async def test_earliest_active_key_is_returned(self, client, registry, handle):
        oldest = await registry.mint(handle)
        await registry.mint(handle)
        outcome = await client.mint_if_absent(handle)
        assert outcome.minted is False
        assert outcome.key.key_id == oldest.key_id


class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, client, registry, handle):
        registry.inject_fault("list_keys", RegistryUnavailableError("503"), count=2)
        assert await client.resolve_by_handle(handle) == []

    @pytest.mark.asyncio
    async def test_gives_up_after_attempt_limit(self, client, registry, handle):
        registry.inject_fault("list_keys", RegistryUnavailableError("503"), count=3)
        with pytest.raises(RegistryUnavailableError):
            await client.resolve_by_handle(handle)
        # Budget exhausted exactly; the registry is healthy again
        assert await client.resolve_by_handle(handle) == []

    @pytest.mark.asyncio
    async def test_rejections_are_not_retried(self, client, registry, handle):
        registry.inject_fault("list_keys", RegistryRejectedError("bad handle", status_code=400), count=2)
        with pytest.raises(RegistryRejectedError):
            await client.resolve_by_handle(handle)
        # Second fault still pending: only one attempt was made
        with pytest.raises(RegistryRejectedError):
            await client.resolve_by_handle(handle)
        assert await client.resolve_by_handle(handle) == []

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self, registry, handle):
        client = KeyRegistryClient(
            registry,
            retry=RetryPolicy(attempts=2, backoff_seconds=0, timeout_seconds=0.05),
        )
        registry.mint_latency = 1.0
        with pytest.raises(UpstreamTimeoutError):
            await client.mint_if_absent(handle)
        assert _mints(registry) == []

    @pytest.mark.asyncio
    async def test_call_with_retry_reinvokes_factory(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise RegistryUnavailableError("try again")
            return "ok"

        policy = RetryPolicy(attempts=3, backoff_seconds=0, timeout_seconds=1.0)
        assert await call_with_retry("flaky", flaky, policy) == "ok"
        assert len(attempts) == 3

    def test_backoff_is_exponential(self):
        policy = RetryPolicy(attempts=4, backoff_seconds=0.5, timeout_seconds=1.0)
        assert [policy.delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


def _record(key_id: str, seq: int, retired: bool = False) -> KeyRecord:
    return KeyRecord(
        key_id=key_id,
        public_key=b"\x04" + bytes(64),
        controller_address="0x" + "00" * 20,
        mint_sequence=seq,
        retired=retired,
    )


class _StubClient:
    def __init__(self, records):
        self._records = records

    async def resolve_by_handle(self, handle):
        return list(self._records)


class TestKeySetResolver:

    @pytest.mark.asyncio
    async def test_unknown_handle_resolves_empty(self, resolver, handle):
        assert await resolver.resolve(handle) == []

    @pytest.mark.asyncio
    async def test_orders_by_mint_sequence(self, handle):
        resolver = KeySetResolver(_StubClient([_record("0x03", 3), _record("0x01", 1), _record("0x02", 2)]))
        keys = await resolver.resolve(handle)
        assert [k.key_id for k in keys] == ["0x01", "0x02", "0x03"]

    @pytest.mark.asyncio
    async def test_removes_duplicates_preferring_retired(self, handle):
        resolver = KeySetResolver(_StubClient([
            _record("0x01", 1),
            _record("0x02", 2),
            _record("0x01", 1, retired=True),
            _record("0x02", 2),
        ]))
        keys = await resolver.resolve(handle)
        assert [k.key_id for k in keys] == ["0x01", "0x02"]
        assert keys[0].retired is True
        assert keys[1].retired is False

    @pytest.mark.asyncio
    async def test_includes_retired_keys(self, resolver, registry, authorizer, handle):
        key = await registry.mint(handle)
        await registry.mint(handle)
        session = await authorizer.obtain_session(key.key_id)
        await registry.retire(key.key_id, session)

        keys = await resolver.resolve(handle)
        assert [k.retired for k in keys] == [True, False]
