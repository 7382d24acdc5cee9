"""
PKP binding service API models.

Request/response bodies keep the camelCase field names existing clients
of the auth routes send and expect (idToken, requestId, pkps) via Pydantic aliases.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Error Models
# =============================================================================

class ErrorCode:
    """Error code registry."""
    # Input layer
    INVALID_CLAIM = "INVALID_CLAIM"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    KEY_NOT_FOUND = "KEY_NOT_FOUND"

    # Upstream layer
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    REGISTRY_UNAVAILABLE = "REGISTRY_UNAVAILABLE"
    REGISTRY_REJECTED = "REGISTRY_REJECTED"
    AUTHORIZATION_UNAVAILABLE = "AUTHORIZATION_UNAVAILABLE"

    # Reconciliation layer
    PARTIAL_RECONCILIATION = "PARTIAL_RECONCILIATION"
    PARTIAL_LIFECYCLE = "PARTIAL_LIFECYCLE"
    UNSAFE_RETIRE = "UNSAFE_RETIRE"

    # Service layer
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Recoverability mapping: True means a retry may succeed
ERROR_RECOVERABILITY: Dict[str, bool] = {
    ErrorCode.INVALID_CLAIM: False,
    ErrorCode.INVALID_ADDRESS: False,
    ErrorCode.VERIFICATION_FAILED: False,
    ErrorCode.KEY_NOT_FOUND: False,
    ErrorCode.UPSTREAM_UNAVAILABLE: True,
    ErrorCode.UPSTREAM_TIMEOUT: True,
    ErrorCode.REGISTRY_UNAVAILABLE: True,
    ErrorCode.REGISTRY_REJECTED: False,
    ErrorCode.AUTHORIZATION_UNAVAILABLE: True,
    ErrorCode.PARTIAL_RECONCILIATION: True,
    ErrorCode.PARTIAL_LIFECYCLE: True,
    ErrorCode.UNSAFE_RETIRE: False,
    ErrorCode.INTERNAL_ERROR: True,
}


class ControllerChangeModel(BaseModel):
    action: str
    address: str
    error: Optional[str] = None


class ErrorDetail(BaseModel):
    """Error body, also embedded in partial-success responses."""
    error: str
    code: str
    recoverable: bool
    unapplied: List[ControllerChangeModel] = Field(default_factory=list)


# =============================================================================
# Request Models
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GoogleOAuthVerifyRequest(_CamelModel):
    """Body of the verify-to-mint and verify-to-fetch routes."""
    id_token: str = Field(..., alias="idToken")


class ReconcileRequest(GoogleOAuthVerifyRequest):
    permitted_addresses: List[str] = Field(default_factory=list, alias="permittedAddresses")
    key_id: Optional[str] = Field(None, alias="keyId")


class LifecycleRequest(GoogleOAuthVerifyRequest):
    policy: Optional[str] = None


class RetireRequest(GoogleOAuthVerifyRequest):
    key_id: str = Field(..., alias="keyId")


# =============================================================================
# Response Models
# =============================================================================

class PKPModel(_CamelModel):
    token_id: str = Field(..., alias="tokenId")
    public_key: str = Field(..., alias="publicKey")
    eth_address: str = Field(..., alias="ethAddress")
    mint_sequence: int = Field(..., alias="mintSequence")
    retired: bool = False
    permitted_addresses: Optional[List[str]] = Field(None, alias="permittedAddresses")


class MintResponse(_CamelModel):
    """requestId is the mint transaction id of the returned key."""
    request_id: Optional[str] = Field(None, alias="requestId")
    key_id: str = Field(..., alias="keyId")
    public_key: str = Field(..., alias="publicKey")
    eth_address: str = Field(..., alias="ethAddress")
    minted: bool


class ReconciliationModel(_CamelModel):
    key_id: str = Field(..., alias="keyId")
    revoked: List[str] = Field(default_factory=list)
    granted: List[str] = Field(default_factory=list)
    unapplied: List[ControllerChangeModel] = Field(default_factory=list)
    cancelled: bool = False
    complete: bool


class LifecycleFailureModel(_CamelModel):
    key_id: str = Field(..., alias="keyId")
    step: str
    code: str
    message: str
    unapplied: List[ControllerChangeModel] = Field(default_factory=list)


class LifecycleResponse(_CamelModel):
    policy: str
    stripped: List[str] = Field(default_factory=list)
    retired: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    partial_failures: List[LifecycleFailureModel] = Field(
        default_factory=list, alias="partialFailures"
    )
    error: Optional[ErrorDetail] = None


class FetchResponse(_CamelModel):
    pkps: List[PKPModel]
    lifecycle: Optional[LifecycleResponse] = None
    error: Optional[ErrorDetail] = None


class ReconcileResponse(_CamelModel):
    results: List[ReconciliationModel]
    error: Optional[ErrorDetail] = None


class HealthResponse(BaseModel):
    ok: bool
    service: str = "pkp-binding"
    registry: str


class LogLevelRequest(BaseModel):
    level: str
