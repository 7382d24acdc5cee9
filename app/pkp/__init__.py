"""Identity-to-key binding and permission reconciliation.

Pipeline: verified IdentityClaim -> AuthMethodHandle -> key registry
(mint / resolve) -> controller reconciliation -> lifecycle policy.
"""

from .exceptions import (
    PKPError,
    InvalidClaimError,
    InvalidAddressError,
    VerificationFailedError,
    KeyNotFoundError,
    UpstreamUnavailableError,
    RegistryUnavailableError,
    UpstreamTimeoutError,
    RegistryRejectedError,
    DuplicateMintError,
    AuthorizationUnavailableError,
    UnsafeRetireError,
    PartialReconciliationError,
    PartialLifecycleError,
)
from .identity import (
    AuthMethodType,
    IdentityClaim,
    AuthMethodHandle,
    normalize_claim,
    derive_auth_method_id,
    handle_for_claim,
)
from .registry import KeyRecord, KeyRegistry, InMemoryKeyRegistry, HttpKeyRegistry
from .registry_client import KeyRegistryClient, MintOutcome
from .resolver import KeySetResolver
from .reconciler import PermissionReconciler, ReconciliationResult, ControllerChange
from .lifecycle import KeyLifecycleManager, LifecycleResult, get_policy
from .service import PKPService, MintResult, FetchResult

__all__ = [
    # Exceptions
    "PKPError",
    "InvalidClaimError",
    "InvalidAddressError",
    "VerificationFailedError",
    "KeyNotFoundError",
    "UpstreamUnavailableError",
    "RegistryUnavailableError",
    "UpstreamTimeoutError",
    "RegistryRejectedError",
    "DuplicateMintError",
    "AuthorizationUnavailableError",
    "UnsafeRetireError",
    "PartialReconciliationError",
    "PartialLifecycleError",
    # Identity
    "AuthMethodType",
    "IdentityClaim",
    "AuthMethodHandle",
    "normalize_claim",
    "derive_auth_method_id",
    "handle_for_claim",
    # Registry
    "KeyRecord",
    "KeyRegistry",
    "InMemoryKeyRegistry",
    "HttpKeyRegistry",
    "KeyRegistryClient",
    "MintOutcome",
    "KeySetResolver",
    # Reconciliation and lifecycle
    "PermissionReconciler",
    "ReconciliationResult",
    "ControllerChange",
    "KeyLifecycleManager",
    "LifecycleResult",
    "get_policy",
    # Service
    "PKPService",
    "MintResult",
    "FetchResult",
]
