"""
PKP binding service configuration constants.

Constants are organized into:
- NORMATIVE: Fixed by the ledger/identity contract, cannot be changed without migration
- POLICY: Implementation choices (timeouts, retry budgets, lifecycle policy)
- OPERATIONAL: Deployment-specific settings (env vars)
"""

import os

# =============================================================================
# NORMATIVE CONSTANTS
# =============================================================================

# Issuers accepted on Google ID tokens. Google emits both forms.
GOOGLE_ISSUERS: frozenset[str] = frozenset({
    "accounts.google.com",
    "https://accounts.google.com",
})

# Only RS256 is used by Google for ID tokens
GOOGLE_ALLOWED_ALGORITHMS: tuple[str, ...] = ("RS256",)

# Auth method pubkey sent with OAuth mints (OAuth methods carry no pubkey)
OAUTH_AUTH_METHOD_PUBKEY: str = "0x"


# =============================================================================
# POLICY CONSTANTS
# =============================================================================

# Per-call deadline for every registry, authorization and verifier call.
# Exceeding it is UpstreamTimeoutError (transient).
UPSTREAM_TIMEOUT_SECONDS: float = float(os.getenv("PKP_UPSTREAM_TIMEOUT", "10.0"))

# Bounded retries for transient upstream errors
REGISTRY_MAX_ATTEMPTS: int = int(os.getenv("PKP_REGISTRY_MAX_ATTEMPTS", "3"))

# Exponential backoff base: delay = base * 2 ** (attempt - 1)
RETRY_BACKOFF_SECONDS: float = float(os.getenv("PKP_RETRY_BACKOFF", "0.2"))

# Polling budget for observing a just-minted key (read-your-writes)
READ_AFTER_WRITE_ATTEMPTS: int = int(os.getenv("PKP_READ_AFTER_WRITE_ATTEMPTS", "5"))
READ_AFTER_WRITE_DELAY_SECONDS: float = float(
    os.getenv("PKP_READ_AFTER_WRITE_DELAY", "0.25")
)

# Lifetime of sessions issued by the local authorization provider
SESSION_TTL_SECONDS: int = int(os.getenv("PKP_SESSION_TTL", "300"))

# Lifecycle policy applied by /auth/google/lifecycle when none is named.
# See app.pkp.lifecycle.get_policy for accepted names.
LIFECYCLE_POLICY: str = os.getenv("PKP_LIFECYCLE_POLICY", "none")

# Whether fetch also runs the lifecycle policy.
# Default False: fetch is read-only. True restores the legacy behaviour
# where fetching keys could strip or retire stale ones.
FETCH_APPLIES_LIFECYCLE: bool = os.getenv(
    "PKP_FETCH_APPLIES_LIFECYCLE", "false"
).lower() == "true"


# =============================================================================
# OPERATIONAL SETTINGS (deployment-specific, via environment variables)
# =============================================================================

# Google OAuth client ID; the expected `aud` of incoming ID tokens
GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")

GOOGLE_JWKS_URL: str = os.getenv(
    "PKP_GOOGLE_JWKS_URL", "https://www.googleapis.com/oauth2/v3/certs"
)

# Registry gateway base URL. Empty selects the in-memory registry when
# PKP_MOCK_REGISTRY_ENABLED is true.
REGISTRY_URL: str = os.getenv("PKP_REGISTRY_URL", "")

# Authorization (signing) network base URL. Empty selects the local provider
# when PKP_MOCK_REGISTRY_ENABLED is true.
AUTH_NETWORK_URL: str = os.getenv("PKP_AUTH_NETWORK_URL", "")

# Bearer token presented to the registry gateway and auth network
UPSTREAM_API_KEY: str = os.getenv("PKP_UPSTREAM_API_KEY", "")

MOCK_REGISTRY_ENABLED: bool = os.getenv(
    "PKP_MOCK_REGISTRY_ENABLED", "true"
).lower() == "true"

# Admin endpoint visibility
# Default: True for dev, set to False in production deployments
ADMIN_ENDPOINT_ENABLED: bool = os.getenv("ADMIN_ENDPOINT_ENABLED", "true").lower() == "true"
