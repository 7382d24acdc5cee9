"""Pytest fixtures for PKP binding tests.

Every test gets a fresh in-memory registry wired to a local authorization
provider, and a zero-backoff retry policy so retry paths run instantly.
"""
import pytest

from app.audit import AuditLogger, get_audit_logger, reset_audit_logger
from app.pkp.authorization import LocalAuthorizationProvider, reset_authorization_provider
from app.pkp.identity import IdentityClaim, handle_for_claim
from app.pkp.lifecycle import KeyLifecycleManager
from app.pkp.reconciler import PermissionReconciler
from app.pkp.registry import InMemoryKeyRegistry, reset_key_registry
from app.pkp.registry_client import KeyRegistryClient
from app.pkp.resolver import KeySetResolver
from app.pkp.retry import RetryPolicy
from app.pkp.service import PKPService, set_pkp_service
from app.pkp.verifier import set_identity_verifier

FAST_RETRY = RetryPolicy(attempts=3, backoff_seconds=0, timeout_seconds=1.0)

GOOGLE_CLIENT = "1234-test.apps.googleusercontent.com"


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset module singletons before and after each test."""
    reset_key_registry()
    reset_authorization_provider()
    reset_audit_logger()
    set_pkp_service(None)
    set_identity_verifier(None)
    yield
    reset_key_registry()
    reset_authorization_provider()
    reset_audit_logger()
    set_pkp_service(None)
    set_identity_verifier(None)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return FAST_RETRY


@pytest.fixture
def authorizer() -> LocalAuthorizationProvider:
    return LocalAuthorizationProvider(ttl_seconds=60)


@pytest.fixture
def registry(authorizer) -> InMemoryKeyRegistry:
    return InMemoryKeyRegistry(authorizer=authorizer)


@pytest.fixture
def audit() -> AuditLogger:
    """The process audit logger, so admin routes see the same events."""
    return get_audit_logger()


@pytest.fixture
def client(registry) -> KeyRegistryClient:
    return KeyRegistryClient(
        registry,
        retry=FAST_RETRY,
        read_after_write_attempts=5,
        read_after_write_delay=0,
    )


@pytest.fixture
def resolver(client) -> KeySetResolver:
    return KeySetResolver(client)


@pytest.fixture
def reconciler(client, authorizer, audit) -> PermissionReconciler:
    return PermissionReconciler(client, authorizer, audit=audit)


@pytest.fixture
def lifecycle(client, reconciler, audit) -> KeyLifecycleManager:
    return KeyLifecycleManager(client, reconciler, audit=audit)


@pytest.fixture
def service(registry, authorizer, audit) -> PKPService:
    return PKPService(
        registry,
        authorizer,
        retry=FAST_RETRY,
        audit=audit,
        lifecycle_policy="none",
        fetch_applies_lifecycle=False,
        read_after_write_delay=0,
    )


@pytest.fixture
def claim() -> IdentityClaim:
    return IdentityClaim(subject_id="110169484474386276334", audience=GOOGLE_CLIENT)


@pytest.fixture
def handle(claim):
    return handle_for_claim(claim)
