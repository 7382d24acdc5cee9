"""PKP binding service: the identity → key pipeline end to end.

Each operation takes a verified IdentityClaim and runs
normalize → derive → registry → resolve, then optionally reconcile or
lifecycle. Fetch is read-only unless PKP_FETCH_APPLIES_LIFECYCLE is set.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from app.audit import AuditLogger, get_audit_logger
from app.core.config import FETCH_APPLIES_LIFECYCLE, LIFECYCLE_POLICY
from app.pkp.authorization import AuthorizationProvider, get_authorization_provider
from app.pkp.exceptions import KeyNotFoundError
from app.pkp.identity import AuthMethodHandle, IdentityClaim, handle_for_claim
from app.pkp.lifecycle import KeyLifecycleManager, LifecycleResult, RetireKeyPolicy, get_policy
from app.pkp.reconciler import PermissionReconciler, ReconciliationResult, normalize_addresses
from app.pkp.registry import KeyRecord, KeyRegistry, get_key_registry
from app.pkp.registry_client import KeyRegistryClient
from app.pkp.resolver import KeySetResolver
from app.pkp.retry import RetryPolicy

log = logging.getLogger(__name__)


@dataclass
class MintResult:
    handle: AuthMethodHandle
    key: KeyRecord
    minted: bool


@dataclass
class KeyView:
    key: KeyRecord
    controllers: list[str]


@dataclass
class FetchResult:
    handle: AuthMethodHandle
    keys: list[KeyView]
    lifecycle: Optional[LifecycleResult] = None


class PKPService:
    """Orchestrates the binding pipeline over injected collaborators."""

    def __init__(
        self,
        registry: KeyRegistry,
        authorizer: AuthorizationProvider,
        *,
        retry: Optional[RetryPolicy] = None,
        audit: Optional[AuditLogger] = None,
        lifecycle_policy: str = LIFECYCLE_POLICY,
        fetch_applies_lifecycle: bool = FETCH_APPLIES_LIFECYCLE,
        **client_options,
    ):
        self.registry = registry
        self.audit = audit
        self.lifecycle_policy = lifecycle_policy
        self.fetch_applies_lifecycle = fetch_applies_lifecycle
        self.client = KeyRegistryClient(registry, retry=retry, **client_options)
        self.resolver = KeySetResolver(self.client)
        self.reconciler = PermissionReconciler(self.client, authorizer, audit=audit)
        self.lifecycle = KeyLifecycleManager(self.client, self.reconciler, audit=audit)

    async def mint_for_identity(self, claim: IdentityClaim) -> MintResult:
        """Return the identity's key, minting it on first use."""
        handle = handle_for_claim(claim)
        outcome = await self.client.mint_if_absent(handle)
        if outcome.minted and self.audit is not None:
            self.audit.log(
                "pkp.mint",
                resource=outcome.key.key_id,
                principal=handle.key,
                details={"mint_tx": outcome.key.mint_tx},
            )
        return MintResult(handle=handle, key=outcome.key, minted=outcome.minted)

    async def fetch_keys_for_identity(self, claim: IdentityClaim) -> FetchResult:
        """All keys bound to the identity with their current controllers."""
        handle = handle_for_claim(claim)
        keys = await self.resolver.resolve(handle)

        lifecycle = None
        if self.fetch_applies_lifecycle and keys:
            lifecycle = await self.lifecycle.apply_policy(keys, get_policy(self.lifecycle_policy))
            keys = await self.resolver.resolve(handle)

        controllers = await asyncio.gather(
            *(self.client.list_controllers(k.key_id) for k in keys)
        )
        views = [KeyView(key=k, controllers=c) for k, c in zip(keys, controllers)]
        for view in views:
            log.info(
                f"PKP permissions tokenId={view.key.key_id} permitted={len(view.controllers)}",
                extra={"key_id": view.key.key_id, "handle": handle.key},
            )
        return FetchResult(handle=handle, keys=views, lifecycle=lifecycle)

    async def _keys_for(self, claim: IdentityClaim, key_id: Optional[str]) -> list[KeyRecord]:
        keys = await self.resolver.resolve(handle_for_claim(claim))
        if key_id is None:
            return [k for k in keys if not k.retired]
        selected = [k for k in keys if k.key_id == key_id]
        if not selected:
            raise KeyNotFoundError(key_id)
        return selected

    async def reconcile_identity(
        self,
        claim: IdentityClaim,
        desired: Iterable[str],
        key_id: Optional[str] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> list[ReconciliationResult]:
        """Converge controllers of the identity's active keys (or one key).

        Keys are reconciled one after another; a key that cannot be
        reconciled at all raises, after earlier keys' results have landed.
        """
        desired_set = normalize_addresses(desired)
        results = []
        for key in await self._keys_for(claim, key_id):
            results.append(await self.reconciler.reconcile(key, desired_set, cancel=cancel))
        return results

    async def apply_lifecycle(
        self,
        claim: IdentityClaim,
        policy_name: Optional[str] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> LifecycleResult:
        policy = get_policy(policy_name or self.lifecycle_policy)
        keys = await self.resolver.resolve(handle_for_claim(claim))
        return await self.lifecycle.apply_policy(keys, policy, cancel=cancel)

    async def retire_key(self, claim: IdentityClaim, key_id: str) -> LifecycleResult:
        """Strip and retire one of the identity's keys."""
        keys = await self._keys_for(claim, key_id)
        return await self.lifecycle.apply_policy(keys, RetireKeyPolicy(key_id))


# =============================================================================
# GLOBAL SINGLETON
# =============================================================================

_service: PKPService | None = None


def get_pkp_service() -> PKPService:
    """Get or create the service singleton from configuration."""
    global _service
    if _service is None:
        _service = PKPService(
            registry=get_key_registry(),
            authorizer=get_authorization_provider(),
            audit=get_audit_logger(),
        )
    return _service


def set_pkp_service(service: PKPService | None) -> None:
    """Install a service instance (for testing)."""
    global _service
    _service = service
