"""Shared constants for keygate.

Numeric limits and reserved identifiers used across modules are defined here.
"""

# ─── Credential Cache ────────────────────────────────────────────────────────

# Time-to-live for cached credential lookups (both the owner-pair map and the
# secret map). Expiry is checked lazily on read.
DEFAULT_CACHE_TTL_S: float = 60.0  # 1 minute

# Upper bound on entries per cache map. Least-recently-used entries are evicted
# first once the bound is reached.
CACHE_MAXSIZE: int = 1000

# ─── Credentials ─────────────────────────────────────────────────────────────

# Owner pair reserved for the root/cloud credential. Always carries exactly one
# global scope.
CLOUD_APP_ID: int = 0
CLOUD_SERVICE_ID: int = 0

# Random bytes per generated key (hex encoded → 32 characters).
KEY_BYTES: int = 16

# ─── Authorization ───────────────────────────────────────────────────────────

# OS variant on which unmanaged devices still require an API key.
OS_VARIANT_PROD: str = "prod"

# Query parameter checked before the Authorization header.
API_KEY_QUERY_PARAM: str = "apikey"
