"""Key lifecycle management driven by named, pluggable policies.

A policy looks at a handle's ordered key list and returns the actions it
wants (strip all controllers, or retire). The manager executes them
through the reconciler and never decides anything itself.

Retirement is irreversible, so retire() re-reads the key's controllers
under the key's lock and refuses (UnsafeRetireError) while any remain.
Failures are collected in LifecycleResult.partial_failures and not
retried here; retiring an already retired key is a no-op, so callers can
simply run the policy again.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from app.audit import AuditLogger
from app.pkp.api_models import ErrorCode
from app.pkp.exceptions import (
    InvalidClaimError,
    PartialLifecycleError,
    PKPError,
    UnsafeRetireError,
)
from app.pkp.reconciler import ControllerChange, PermissionReconciler
from app.pkp.registry import KeyRecord
from app.pkp.registry_client import KeyRegistryClient

log = logging.getLogger(__name__)

STRIP = "strip"
RETIRE = "retire"


@dataclass(frozen=True)
class LifecycleAction:
    kind: str  # "strip" or "retire"
    key: KeyRecord
    reason: str = ""


@dataclass
class LifecycleFailure:
    key_id: str
    step: str  # "strip" or "retire"
    code: str
    message: str
    unapplied: list[ControllerChange] = field(default_factory=list)


@dataclass
class LifecycleResult:
    policy: str
    stripped: list[str] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # already retired
    partial_failures: list[LifecycleFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.partial_failures

    def raise_for_partial(self) -> "LifecycleResult":
        if not self.complete:
            raise PartialLifecycleError(self)
        return self


# =============================================================================
# POLICIES
# =============================================================================


class LifecyclePolicy(Protocol):
    name: str

    def decide(self, keys: list[KeyRecord]) -> list[LifecycleAction]:
        """Actions for keys ordered oldest first."""
        ...


def _active(keys: list[KeyRecord]) -> list[KeyRecord]:
    return [k for k in keys if not k.retired]


class KeepAllPolicy:
    """Never touches any key."""
    name = "none"

    def decide(self, keys: list[KeyRecord]) -> list[LifecycleAction]:
        return []


class RetireAllButNewestPolicy:
    """Retire every active key except the most recently minted one."""
    name = "retire-all-but-newest"

    def decide(self, keys: list[KeyRecord]) -> list[LifecycleAction]:
        active = _active(keys)
        return [LifecycleAction(RETIRE, k, "superseded by newer key") for k in active[:-1]]


class StripSecondNewestPolicy:
    """Strip all controllers from the key minted just before the newest."""
    name = "strip-second-newest"

    def decide(self, keys: list[KeyRecord]) -> list[LifecycleAction]:
        active = _active(keys)
        if len(active) < 2:
            return []
        return [LifecycleAction(STRIP, active[-2], "second newest key")]


class RetireOlderThanPolicy:
    """Retire keys more than `positions` places older than the newest."""

    def __init__(self, positions: int):
        if positions < 0:
            raise ValueError("positions must be >= 0")
        self.positions = positions
        self.name = f"retire-older-than:{positions}"

    def decide(self, keys: list[KeyRecord]) -> list[LifecycleAction]:
        active = _active(keys)
        cutoff = len(active) - 1 - self.positions
        return [
            LifecycleAction(RETIRE, k, f"more than {self.positions} position(s) older than newest")
            for k in active[:max(cutoff, 0)]
        ]


class RetireKeyPolicy:
    """Retire one explicitly named key."""

    def __init__(self, key_id: str):
        self.key_id = key_id
        self.name = f"retire:{key_id}"

    def decide(self, keys: list[KeyRecord]) -> list[LifecycleAction]:
        return [LifecycleAction(RETIRE, k, "explicit retire request") for k in keys if k.key_id == self.key_id]


_POLICIES: dict[str, Callable[[], LifecyclePolicy]] = {
    KeepAllPolicy.name: KeepAllPolicy,
    RetireAllButNewestPolicy.name: RetireAllButNewestPolicy,
    StripSecondNewestPolicy.name: StripSecondNewestPolicy,
}


def get_policy(name: str) -> LifecyclePolicy:
    """Look up a policy by name; ``retire-older-than:K`` takes a count.

    Raises:
        InvalidClaimError: Unknown or malformed policy name.
    """
    if name.startswith("retire-older-than:"):
        try:
            return RetireOlderThanPolicy(int(name.split(":", 1)[1]))
        except ValueError:
            raise InvalidClaimError(f"Malformed lifecycle policy: {name!r}")
    factory = _POLICIES.get(name)
    if factory is None:
        raise InvalidClaimError(
            f"Unknown lifecycle policy {name!r}; expected one of "
            f"{sorted(_POLICIES) + ['retire-older-than:K']}"
        )
    return factory()


# =============================================================================
# MANAGER
# =============================================================================


class KeyLifecycleManager:
    """Executes policy decisions through the reconciler."""

    def __init__(
        self,
        client: KeyRegistryClient,
        reconciler: PermissionReconciler,
        audit: Optional[AuditLogger] = None,
    ):
        self._client = client
        self._reconciler = reconciler
        self._audit = audit

    async def strip_all_controllers(self, key: KeyRecord, *, cancel: Optional[asyncio.Event] = None):
        """Revoke every controller of key (reconcile to the empty set)."""
        return await self._reconciler.reconcile(key, [], cancel=cancel)

    async def retire(self, key: KeyRecord) -> bool:
        """Permanently retire key.

        Returns:
            True if retired now, False if it was already retired.

        Raises:
            UnsafeRetireError: Key still has controllers; nothing was mutated.
            AuthorizationUnavailableError: No session could be obtained.
        """
        async with self._reconciler.key_locks.hold(key.key_id):
            controllers = await self._client.list_controllers(key.key_id)
            if controllers:
                raise UnsafeRetireError(key.key_id, controllers)
            if key.retired:
                return False

            session = await self._reconciler.obtain_session(key.key_id)
            try:
                retired = await self._client.retire(key.key_id, session)
            finally:
                await self._reconciler.release_session(session)

        if self._audit is not None:
            self._audit.log("pkp.retire", resource=key.key_id, status="success" if retired else "noop")
        log.info(f"retire {key.key_id}: {'retired' if retired else 'already retired'}",
                 extra={"key_id": key.key_id})
        return retired

    async def apply_policy(
        self,
        keys: list[KeyRecord],
        policy: LifecyclePolicy,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> LifecycleResult:
        """Run policy over keys (ordered oldest first)."""
        result = LifecycleResult(policy=policy.name)
        actions = policy.decide(keys)
        log.info(f"lifecycle {policy.name}: {len(actions)} action(s) over {len(keys)} key(s)")

        for index, action in enumerate(actions):
            key = action.key
            if cancel is not None and cancel.is_set():
                for pending in actions[index:]:
                    result.partial_failures.append(LifecycleFailure(
                        key_id=pending.key.key_id,
                        step=pending.kind,
                        code=ErrorCode.PARTIAL_LIFECYCLE,
                        message="lifecycle pass cancelled before this action",
                    ))
                break

            if key.retired:
                result.skipped.append(key.key_id)
                continue

            try:
                strip = await self.strip_all_controllers(key, cancel=cancel)
            except PKPError as e:
                result.partial_failures.append(LifecycleFailure(key.key_id, STRIP, e.code, e.message))
                continue
            if not strip.complete:
                result.partial_failures.append(LifecycleFailure(
                    key_id=key.key_id,
                    step=STRIP,
                    code=ErrorCode.PARTIAL_RECONCILIATION,
                    message=f"{len(strip.unapplied)} controller change(s) unapplied",
                    unapplied=list(strip.unapplied),
                ))
                continue
            result.stripped.append(key.key_id)

            if action.kind != RETIRE:
                continue
            try:
                if await self.retire(key):
                    result.retired.append(key.key_id)
                else:
                    result.skipped.append(key.key_id)
            except PKPError as e:
                result.partial_failures.append(LifecycleFailure(key.key_id, RETIRE, e.code, e.message))

        if not result.complete:
            log.warning(f"lifecycle {policy.name}: {len(result.partial_failures)} failure(s)")
        return result
