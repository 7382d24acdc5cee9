"""PKP binding exceptions mapped to error codes.

Input errors (bad claim, failed verification, unsafe retire) are
non-recoverable. Upstream errors (registry, authorization network,
timeouts) are recoverable and retried with backoff at the client layer.
Partial outcomes carry the exact unapplied diff so a retry can be targeted.
"""

from typing import TYPE_CHECKING

from app.pkp.api_models import ERROR_RECOVERABILITY, ErrorCode

if TYPE_CHECKING:
    from app.pkp.lifecycle import LifecycleResult
    from app.pkp.reconciler import ReconciliationResult


class PKPError(Exception):
    """Base exception for PKP binding operations.

    Carries an error code that maps to ErrorCode constants.
    """

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)

    @property
    def recoverable(self) -> bool:
        return ERROR_RECOVERABILITY.get(self.code, False)


class InvalidClaimError(PKPError):
    """Identity claim is empty, of unknown type, or cannot be encoded."""

    def __init__(self, message: str = "Invalid identity claim"):
        super().__init__(ErrorCode.INVALID_CLAIM, message)


class InvalidAddressError(PKPError):
    """Controller address is not a 20-byte hex address."""

    def __init__(self, message: str = "Invalid controller address"):
        super().__init__(ErrorCode.INVALID_ADDRESS, message)


class VerificationFailedError(PKPError):
    """Identity assertion rejected by the verifier."""

    def __init__(self, message: str = "Unable to verify Google account"):
        super().__init__(ErrorCode.VERIFICATION_FAILED, message)


class KeyNotFoundError(PKPError):
    """Key id is not bound to the requesting identity."""

    def __init__(self, key_id: str):
        self.key_id = key_id
        super().__init__(ErrorCode.KEY_NOT_FOUND, f"Key not found for identity: {key_id}")


class UpstreamUnavailableError(PKPError):
    """Transient failure reaching an external dependency."""

    def __init__(self, message: str = "Upstream unavailable", code: str = ErrorCode.UPSTREAM_UNAVAILABLE):
        super().__init__(code, message)


class RegistryUnavailableError(UpstreamUnavailableError):
    """Transient registry failure (5xx, connection error)."""

    def __init__(self, message: str = "Key registry unavailable"):
        super().__init__(message, code=ErrorCode.REGISTRY_UNAVAILABLE)


class UpstreamTimeoutError(UpstreamUnavailableError):
    """Per-call deadline exceeded."""

    def __init__(self, message: str = "Upstream call timed out"):
        super().__init__(message, code=ErrorCode.UPSTREAM_TIMEOUT)


class RegistryRejectedError(PKPError):
    """Registry refused the request (malformed handle, unknown key...)."""

    def __init__(self, message: str = "Key registry rejected request", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(ErrorCode.REGISTRY_REJECTED, message)


class DuplicateMintError(RegistryRejectedError):
    """Registry refused a mint because the handle already has a key.

    Resolved by the registry client re-reading the handle's keys.
    """

    def __init__(self, message: str = "Key already minted for handle"):
        super().__init__(message, status_code=409)


class AuthorizationUnavailableError(UpstreamUnavailableError):
    """Could not obtain an authorization session for a key."""

    def __init__(self, message: str = "Authorization session unavailable"):
        super().__init__(message, code=ErrorCode.AUTHORIZATION_UNAVAILABLE)


class UnsafeRetireError(PKPError):
    """Retire attempted while the key still has controllers."""

    def __init__(self, key_id: str, controllers: list[str]):
        self.key_id = key_id
        self.controllers = controllers
        super().__init__(
            ErrorCode.UNSAFE_RETIRE,
            f"Refusing to retire {key_id}: {len(controllers)} controller(s) still permitted",
        )


class PartialReconciliationError(PKPError):
    """Some but not all controller changes were applied."""

    def __init__(self, result: "ReconciliationResult"):
        self.result = result
        super().__init__(
            ErrorCode.PARTIAL_RECONCILIATION,
            f"Reconciliation of {result.key_id} incomplete: "
            f"{len(result.unapplied)} change(s) unapplied",
        )


class PartialLifecycleError(PKPError):
    """One or more policy-driven operations did not complete."""

    def __init__(self, result: "LifecycleResult"):
        self.result = result
        super().__init__(
            ErrorCode.PARTIAL_LIFECYCLE,
            f"Lifecycle policy {result.policy} incomplete: "
            f"{len(result.partial_failures)} failure(s)",
        )
