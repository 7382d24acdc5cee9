"""Permission reconciliation: converge a key's controllers to a desired set.

A pass reads the key's current controllers, diffs them against the
desired set, and applies each revoke/grant as its own registry call. The
pass holds one AuthorizationSession, renewed if it expires mid-pass and
released when the pass ends. Passes on the same key are
serialized with a per-key lock.

Reconciliation is not atomic. Changes that land stay landed; the ones
that did not are reported in ReconciliationResult.unapplied. Because the
diff is recomputed from the registry on every pass, re-running with the
same desired set applies exactly what is still missing.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from app.audit import AuditLogger
from app.pkp.authorization import AuthorizationProvider, AuthorizationSession
from app.pkp.exceptions import (
    AuthorizationUnavailableError,
    InvalidAddressError,
    PartialReconciliationError,
    PKPError,
)
from app.pkp.keccak import to_checksum_address
from app.pkp.locks import KeyedLock
from app.pkp.registry import KeyRecord
from app.pkp.registry_client import KeyRegistryClient
from app.pkp.retry import RetryPolicy, call_with_retry

log = logging.getLogger(__name__)

GRANT = "grant"
REVOKE = "revoke"


@dataclass(frozen=True)
class ControllerChange:
    """One controller mutation; error is set when it was not applied."""
    action: str  # "grant" or "revoke"
    address: str
    error: Optional[str] = None


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation pass over one key."""
    key_id: str
    revoked: list[str] = field(default_factory=list)
    granted: list[str] = field(default_factory=list)
    unapplied: list[ControllerChange] = field(default_factory=list)
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.unapplied

    @property
    def mutations(self) -> int:
        return len(self.revoked) + len(self.granted)

    def raise_for_partial(self) -> "ReconciliationResult":
        if not self.complete:
            raise PartialReconciliationError(self)
        return self


def normalize_addresses(addresses: Iterable[str]) -> set[str]:
    """EIP-55 normalize a set of controller addresses.

    Raises:
        InvalidAddressError: On the first malformed address.
    """
    normalized = set()
    for address in addresses:
        try:
            normalized.add(to_checksum_address(address))
        except ValueError:
            raise InvalidAddressError(f"Invalid controller address: {address!r}")
    return normalized


class PermissionReconciler:
    """Applies controller diffs to keys, one serialized pass per key."""

    def __init__(
        self,
        client: KeyRegistryClient,
        authorizer: AuthorizationProvider,
        audit: Optional[AuditLogger] = None,
        auth_retry: Optional[RetryPolicy] = None,
    ):
        self._client = client
        self._authorizer = authorizer
        self._audit = audit
        self._auth_retry = auth_retry or client.retry
        self.key_locks = KeyedLock()

    async def obtain_session(self, key_id: str) -> AuthorizationSession:
        """Obtain a session for key_id with bounded retries.

        Raises:
            AuthorizationUnavailableError: If every attempt failed.
        """
        try:
            return await call_with_retry(
                f"obtain_session({key_id})",
                lambda: self._authorizer.obtain_session(key_id),
                self._auth_retry,
            )
        except AuthorizationUnavailableError:
            raise
        except PKPError as e:
            # Timeouts and other transient failures surface as one error type
            raise AuthorizationUnavailableError(f"No session for {key_id}: {e.message}")

    async def release_session(self, session: AuthorizationSession) -> None:
        await self._authorizer.release_session(session)

    async def reconcile(
        self,
        key: KeyRecord,
        desired: Iterable[str],
        *,
        cancel: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> ReconciliationResult:
        """Converge key's controllers to desired.

        Args:
            key: Key to reconcile.
            desired: Controller addresses that should be permitted.
            cancel: When set, remaining changes are skipped and reported.
            deadline: time.monotonic() value after which remaining changes
                are skipped and reported.

        Returns:
            ReconciliationResult; check ``complete`` or call ``raise_for_partial``.

        Raises:
            InvalidAddressError: A desired address is malformed (nothing applied).
            AuthorizationUnavailableError: No session could be obtained (nothing applied).
            RegistryUnavailableError / UpstreamTimeoutError / RegistryRejectedError:
                Reading current controllers failed (nothing applied).
        """
        desired_set = normalize_addresses(desired)

        async with self.key_locks.hold(key.key_id):
            current = normalize_addresses(await self._client.list_controllers(key.key_id))
            changes = [ControllerChange(REVOKE, a) for a in sorted(current - desired_set)]
            changes += [ControllerChange(GRANT, a) for a in sorted(desired_set - current)]

            result = ReconciliationResult(key_id=key.key_id)
            if not changes:
                log.debug(f"reconcile {key.key_id}: already converged")
                return result

            log.info(
                f"reconcile {key.key_id}: {sum(c.action == REVOKE for c in changes)} revoke(s), "
                f"{sum(c.action == GRANT for c in changes)} grant(s)",
                extra={"key_id": key.key_id},
            )
            await self._apply(key, changes, result, cancel, deadline)

        if not result.complete:
            log.warning(
                f"reconcile {key.key_id}: {len(result.unapplied)} change(s) unapplied",
                extra={"key_id": key.key_id},
            )
        return result

    async def _apply(
        self,
        key: KeyRecord,
        changes: list[ControllerChange],
        result: ReconciliationResult,
        cancel: Optional[asyncio.Event],
        deadline: Optional[float],
    ) -> None:
        """Apply changes in order under one session, renewed when it expires.

        Whichever session is held when the pass ends is released, also on
        cancellation.
        """
        session: Optional[AuthorizationSession] = await self.obtain_session(key.key_id)
        try:
            for index, change in enumerate(changes):
                remaining = changes[index:]

                stop_reason = None
                if cancel is not None and cancel.is_set():
                    stop_reason = "cancelled"
                elif deadline is not None and time.monotonic() >= deadline:
                    stop_reason = "deadline exceeded"
                if stop_reason:
                    result.cancelled = True
                    result.unapplied.extend(
                        ControllerChange(c.action, c.address, stop_reason) for c in remaining
                    )
                    return

                if session.is_expired:
                    expired, session = session, None
                    await self.release_session(expired)
                    try:
                        session = await self.obtain_session(key.key_id)
                    except AuthorizationUnavailableError as e:
                        result.unapplied.extend(
                            ControllerChange(c.action, c.address, e.message) for c in remaining
                        )
                        return

                try:
                    if change.action == REVOKE:
                        await self._client.revoke_controller(key.key_id, change.address, session)
                        result.revoked.append(change.address)
                    else:
                        await self._client.grant_controller(key.key_id, change.address, session)
                        result.granted.append(change.address)
                    self._record(change, key, "success")
                except PKPError as e:
                    result.unapplied.append(ControllerChange(change.action, change.address, e.message))
                    self._record(change, key, "error", e.message)
                except asyncio.CancelledError:
                    # The in-flight call may or may not have landed; the next pass re-diffs
                    log.warning(
                        f"reconcile {key.key_id} cancelled with {len(remaining)} change(s) outstanding: "
                        + ", ".join(f"{c.action} {c.address}" for c in remaining),
                        extra={"key_id": key.key_id},
                    )
                    raise
        finally:
            if session is not None:
                await self.release_session(session)

    def _record(self, change: ControllerChange, key: KeyRecord, status: str, error: str | None = None) -> None:
        if self._audit is None:
            return
        details = {"address": change.address}
        if error:
            details["error"] = error
        self._audit.log(f"controller.{change.action}", resource=key.key_id, status=status, details=details)
