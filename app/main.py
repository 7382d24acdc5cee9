import logging
import os
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.audit import get_audit_logger
from app.logging_config import configure_logging
from app.pkp.api_models import (
    ControllerChangeModel,
    ErrorCode,
    ErrorDetail,
    FetchResponse,
    GoogleOAuthVerifyRequest,
    HealthResponse,
    LifecycleFailureModel,
    LifecycleRequest,
    LifecycleResponse,
    LogLevelRequest,
    MintResponse,
    PKPModel,
    ReconcileRequest,
    ReconcileResponse,
    ReconciliationModel,
    RetireRequest,
)
from app.pkp.exceptions import (
    PartialLifecycleError,
    PartialReconciliationError,
    PKPError,
)
from app.pkp.lifecycle import LifecycleResult
from app.pkp.reconciler import ControllerChange, ReconciliationResult
from app.pkp.registry import KeyRecord
from app.pkp.service import get_pkp_service
from app.pkp.verifier import get_identity_verifier

configure_logging()
log = logging.getLogger("pkp")

app = FastAPI(title="PKP Binding Service", version="0.1.0")


# =============================================================================
# Error mapping
# =============================================================================

# Codes not listed are input errors (400)
HTTP_STATUS_BY_CODE = {
    ErrorCode.KEY_NOT_FOUND: 404,
    ErrorCode.UNSAFE_RETIRE: 409,
    ErrorCode.REGISTRY_REJECTED: 502,
    ErrorCode.UPSTREAM_UNAVAILABLE: 503,
    ErrorCode.REGISTRY_UNAVAILABLE: 503,
    ErrorCode.AUTHORIZATION_UNAVAILABLE: 503,
    ErrorCode.UPSTREAM_TIMEOUT: 504,
    ErrorCode.INTERNAL_ERROR: 500,
}


@app.exception_handler(PKPError)
async def pkp_error_handler(request: Request, exc: PKPError):
    status = HTTP_STATUS_BY_CODE.get(exc.code, 400)
    if exc.code == ErrorCode.REGISTRY_REJECTED:
        log.error(f"registry rejected request on {request.url.path}: {exc.message}")
    elif status >= 500:
        log.warning(f"upstream failure on {request.url.path}: {exc.code} {exc.message}")
    detail = ErrorDetail(error=exc.message, code=exc.code, recoverable=exc.recoverable)
    return JSONResponse(status_code=status, content=detail.model_dump(exclude={"unapplied"}))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    log.exception(f"unhandled error on {request.url.path}")
    detail = ErrorDetail(error="Internal error", code=ErrorCode.INTERNAL_ERROR, recoverable=True)
    return JSONResponse(status_code=500, content=detail.model_dump(exclude={"unapplied"}))


@app.middleware("http")
async def req_log(request: Request, call_next):
    start = time.time()
    route = request.url.path
    remote = request.client.host if request.client else "-"
    resp = await call_next(request)
    duration_ms = int((time.time() - start) * 1000)
    log.info(f"request_complete status={resp.status_code} duration_ms={duration_ms}",
             extra={"request_id": "-", "route": route, "remote_addr": remote})
    return resp


# =============================================================================
# Response builders
# =============================================================================


def _dump(model) -> JSONResponse:
    return JSONResponse(model.model_dump(by_alias=True, exclude_none=True))


def _pkp_model(key: KeyRecord, controllers: list[str] | None = None) -> PKPModel:
    return PKPModel(
        token_id=key.key_id,
        public_key=key.public_key_hex,
        eth_address=key.controller_address,
        mint_sequence=key.mint_sequence,
        retired=key.retired,
        permitted_addresses=controllers,
    )


def _changes(changes: list[ControllerChange]) -> list[ControllerChangeModel]:
    return [ControllerChangeModel(action=c.action, address=c.address, error=c.error) for c in changes]


def _partial_detail(exc: PKPError, unapplied: list[ControllerChange]) -> ErrorDetail:
    return ErrorDetail(
        error=exc.message,
        code=exc.code,
        recoverable=exc.recoverable,
        unapplied=_changes(unapplied),
    )


def _reconcile_response(results: list[ReconciliationResult]) -> ReconcileResponse:
    error = None
    incomplete = [r for r in results if not r.complete]
    if incomplete:
        unapplied = [c for r in incomplete for c in r.unapplied]
        error = _partial_detail(PartialReconciliationError(incomplete[0]), unapplied)
        if len(incomplete) > 1:
            error.error = f"{len(incomplete)} key(s) incomplete: {len(unapplied)} change(s) unapplied"
    return ReconcileResponse(
        results=[
            ReconciliationModel(
                key_id=r.key_id,
                revoked=r.revoked,
                granted=r.granted,
                unapplied=_changes(r.unapplied),
                cancelled=r.cancelled,
                complete=r.complete,
            )
            for r in results
        ],
        error=error,
    )


def _lifecycle_response(result: LifecycleResult) -> LifecycleResponse:
    error = None
    if not result.complete:
        unapplied = [c for f in result.partial_failures for c in f.unapplied]
        error = _partial_detail(PartialLifecycleError(result), unapplied)
    return LifecycleResponse(
        policy=result.policy,
        stripped=result.stripped,
        retired=result.retired,
        skipped=result.skipped,
        partial_failures=[
            LifecycleFailureModel(
                key_id=f.key_id,
                step=f.step,
                code=f.code,
                message=f.message,
                unapplied=_changes(f.unapplied),
            )
            for f in result.partial_failures
        ],
        error=error,
    )


# =============================================================================
# Google OAuth routes
# =============================================================================


@app.post("/auth/google/verify-to-mint")
async def verify_to_mint(req: GoogleOAuthVerifyRequest):
    """Verify a Google ID token and return the identity's key, minting on first use."""
    claim = await get_identity_verifier().verify(req.id_token)
    result = await get_pkp_service().mint_for_identity(claim)
    return _dump(MintResponse(
        request_id=result.key.mint_tx,
        key_id=result.key.key_id,
        public_key=result.key.public_key_hex,
        eth_address=result.key.controller_address,
        minted=result.minted,
    ))


@app.post("/auth/google/verify-to-fetch-pkps")
async def verify_to_fetch_pkps(req: GoogleOAuthVerifyRequest):
    claim = await get_identity_verifier().verify(req.id_token)
    result = await get_pkp_service().fetch_keys_for_identity(claim)

    lifecycle = _lifecycle_response(result.lifecycle) if result.lifecycle else None
    return _dump(FetchResponse(
        pkps=[_pkp_model(v.key, v.controllers) for v in result.keys],
        lifecycle=lifecycle,
        error=lifecycle.error if lifecycle else None,
    ))


@app.post("/auth/google/reconcile")
async def reconcile(req: ReconcileRequest):
    """Converge permitted addresses of the identity's active keys (or keyId)."""
    claim = await get_identity_verifier().verify(req.id_token)
    results = await get_pkp_service().reconcile_identity(
        claim, req.permitted_addresses, key_id=req.key_id
    )
    return _dump(_reconcile_response(results))


@app.post("/auth/google/lifecycle")
async def lifecycle(req: LifecycleRequest):
    claim = await get_identity_verifier().verify(req.id_token)
    result = await get_pkp_service().apply_lifecycle(claim, req.policy)
    return _dump(_lifecycle_response(result))


@app.post("/auth/google/retire")
async def retire(req: RetireRequest):
    claim = await get_identity_verifier().verify(req.id_token)
    result = await get_pkp_service().retire_key(claim, req.key_id)
    return _dump(_lifecycle_response(result))


# =============================================================================
# Operational routes
# =============================================================================


@app.get("/healthz")
def healthz():
    return HealthResponse(ok=True, registry=get_pkp_service().registry.name).model_dump()


@app.get("/version")
def version():
    # GIT_SHA is injected at deploy time
    return {"git_sha": os.getenv("GIT_SHA", "unknown")}


def _admin_disabled() -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Admin endpoint disabled"})


@app.get("/admin")
def admin():
    """Return configurable items for operator visibility.

    Gated by ADMIN_ENDPOINT_ENABLED (default: True for dev, False for prod).
    """
    from app.core import config

    if not config.ADMIN_ENDPOINT_ENABLED:
        return _admin_disabled()

    return {
        "policy": {
            "upstream_timeout_seconds": config.UPSTREAM_TIMEOUT_SECONDS,
            "registry_max_attempts": config.REGISTRY_MAX_ATTEMPTS,
            "retry_backoff_seconds": config.RETRY_BACKOFF_SECONDS,
            "read_after_write_attempts": config.READ_AFTER_WRITE_ATTEMPTS,
            "session_ttl_seconds": config.SESSION_TTL_SECONDS,
            "lifecycle_policy": config.LIFECYCLE_POLICY,
            "fetch_applies_lifecycle": config.FETCH_APPLIES_LIFECYCLE,
        },
        "upstreams": {
            "registry": get_pkp_service().registry.name,
            "registry_url": config.REGISTRY_URL or None,
            "auth_network_url": config.AUTH_NETWORK_URL or None,
            "google_client_id_configured": bool(config.GOOGLE_CLIENT_ID),
        },
        "environment": {
            "log_level_name": logging.getLevelName(logging.getLogger().getEffectiveLevel()),
        },
    }


@app.get("/admin/audit")
def admin_audit(limit: int = 100, action: str | None = None, status: str | None = None):
    """Recent audit events, newest first. Gated by ADMIN_ENDPOINT_ENABLED."""
    from app.core.config import ADMIN_ENDPOINT_ENABLED

    if not ADMIN_ENDPOINT_ENABLED:
        return _admin_disabled()

    events = get_audit_logger().get_recent_events(
        limit=limit, action_filter=action, status_filter=status
    )
    return {"events": events, "count": len(events)}


@app.post("/admin/log-level")
def set_log_level(req: LogLevelRequest):
    """Change log level at runtime (DEBUG, INFO, WARNING, ERROR, CRITICAL).

    Gated by ADMIN_ENDPOINT_ENABLED.
    """
    from app.core.config import ADMIN_ENDPOINT_ENABLED

    if not ADMIN_ENDPOINT_ENABLED:
        return _admin_disabled()

    valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    level_upper = req.level.upper()

    if level_upper not in valid_levels:
        return JSONResponse(
            status_code=400,
            content={"detail": f"Invalid log level. Must be one of: {valid_levels}"}
        )

    logging.getLogger().setLevel(getattr(logging, level_upper))
    log.info(f"Log level changed to {level_upper}")

    return {"success": True, "log_level": level_upper}
