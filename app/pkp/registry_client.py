"""Retrying, idempotent wrapper around the key registry.

Guarantees provided on top of the raw KeyRegistry:
- at most one key per handle: mints are serialized per handle and every
  mint attempt first re-reads the handle's keys, so a retried or
  concurrent mint returns the key that already landed. A retry after a
  failed mint polls within the read-after-write budget before minting
  again, since the failed mint may have landed but not be visible yet;
- read-your-writes: mint_if_absent only returns once list_keys shows the
  new key, so a following resolve_by_handle observes it;
- bounded retries with per-call deadlines for every registry call.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from app.core.config import READ_AFTER_WRITE_ATTEMPTS, READ_AFTER_WRITE_DELAY_SECONDS
from app.pkp.authorization import AuthorizationSession
from app.pkp.exceptions import DuplicateMintError, RegistryUnavailableError
from app.pkp.identity import AuthMethodHandle
from app.pkp.locks import KeyedLock
from app.pkp.registry import KeyRecord, KeyRegistry
from app.pkp.retry import RetryPolicy, call_with_retry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MintOutcome:
    """Result of mint_if_absent."""
    key: KeyRecord
    minted: bool  # False when an existing key was returned


def _ordered(keys: list[KeyRecord]) -> list[KeyRecord]:
    return sorted(keys, key=lambda k: (k.mint_sequence, k.key_id))


def _active(keys: list[KeyRecord]) -> list[KeyRecord]:
    return [k for k in keys if not k.retired]


class KeyRegistryClient:
    """Registry client used by every pipeline component."""

    def __init__(
        self,
        registry: KeyRegistry,
        retry: Optional[RetryPolicy] = None,
        read_after_write_attempts: int = READ_AFTER_WRITE_ATTEMPTS,
        read_after_write_delay: float = READ_AFTER_WRITE_DELAY_SECONDS,
    ):
        self.registry = registry
        self.retry = retry or RetryPolicy()
        self._raw_attempts = max(1, read_after_write_attempts)
        self._raw_delay = read_after_write_delay
        self._mint_locks = KeyedLock()

    async def mint_if_absent(self, handle: AuthMethodHandle) -> MintOutcome:
        """Return the handle's key, minting one if none is active.

        The earliest non-retired key is the handle's key. Retired keys are
        ignored, so an identity whose keys were all burned gets a new one.

        Raises:
            RegistryUnavailableError / UpstreamTimeoutError: Retries exhausted.
            RegistryRejectedError: Registry refused the handle.
        """
        async with self._mint_locks.hold(handle.key):
            issued = False

            async def attempt() -> MintOutcome:
                nonlocal issued
                if issued:
                    # An earlier mint may have landed with its response lost
                    active = await self._poll_active(handle)
                    if active:
                        return MintOutcome(key=_ordered(active)[0], minted=True)
                else:
                    active = _active(await self.registry.list_keys(handle))
                    if active:
                        return MintOutcome(key=_ordered(active)[0], minted=False)
                issued = True
                try:
                    return MintOutcome(key=await self.registry.mint(handle), minted=True)
                except DuplicateMintError:
                    log.info(f"mint for {handle.key} merged by registry, re-reading")
                    active = _active(await self.registry.list_keys(handle))
                    if not active:
                        raise RegistryUnavailableError(
                            f"Registry reported duplicate mint for {handle.key} but lists no key"
                        )
                    return MintOutcome(key=_ordered(active)[0], minted=False)

            outcome = await call_with_retry(f"mint_if_absent({handle.key})", attempt, self.retry)

            if outcome.minted:
                log.info(
                    f"Minted key {outcome.key.key_id} for {handle.key}",
                    extra={"key_id": outcome.key.key_id, "handle": handle.key},
                )
                await self._await_visible(handle, outcome.key)
            return outcome

    async def _poll_active(self, handle: AuthMethodHandle) -> list[KeyRecord]:
        """Poll list_keys for an active key within the read-after-write budget.

        Used before re-issuing a mint whose outcome is unknown, so a landed
        but not yet visible key is found instead of minted twice.
        """
        for attempt in range(1, self._raw_attempts + 1):
            active = _active(await self.registry.list_keys(handle))
            if active:
                return active
            log.debug(f"no key visible for {handle.key} after unknown mint outcome (attempt {attempt})")
            if attempt < self._raw_attempts and self._raw_delay > 0:
                await asyncio.sleep(self._raw_delay)
        return []

    async def _await_visible(self, handle: AuthMethodHandle, key: KeyRecord) -> None:
        """Poll list_keys until key shows up (read-your-writes)."""
        for attempt in range(1, self._raw_attempts + 1):
            keys = await self.resolve_by_handle(handle)
            if any(k.key_id == key.key_id for k in keys):
                return
            log.debug(f"minted key {key.key_id} not yet visible (attempt {attempt})")
            if attempt < self._raw_attempts and self._raw_delay > 0:
                await asyncio.sleep(self._raw_delay)
        raise RegistryUnavailableError(
            f"Minted key {key.key_id} not visible for {handle.key} "
            f"after {self._raw_attempts} read(s)"
        )

    async def resolve_by_handle(self, handle: AuthMethodHandle) -> list[KeyRecord]:
        """All keys bound to handle; empty when none was minted."""
        return await call_with_retry(
            f"list_keys({handle.key})",
            lambda: self.registry.list_keys(handle),
            self.retry,
        )

    async def list_controllers(self, key_id: str) -> list[str]:
        return await call_with_retry(
            f"list_controllers({key_id})",
            lambda: self.registry.list_controllers(key_id),
            self.retry,
        )

    async def grant_controller(self, key_id: str, address: str, session: AuthorizationSession) -> None:
        await call_with_retry(
            f"grant_controller({key_id}, {address})",
            lambda: self.registry.grant_controller(key_id, address, session),
            self.retry,
        )

    async def revoke_controller(self, key_id: str, address: str, session: AuthorizationSession) -> None:
        await call_with_retry(
            f"revoke_controller({key_id}, {address})",
            lambda: self.registry.revoke_controller(key_id, address, session),
            self.retry,
        )

    async def retire(self, key_id: str, session: AuthorizationSession) -> bool:
        return await call_with_retry(
            f"retire({key_id})",
            lambda: self.registry.retire(key_id, session),
            self.retry,
        )
