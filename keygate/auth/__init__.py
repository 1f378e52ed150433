"""keygate API key package.

Public API:
  - GlobalScope, AppScope, ScopedResources — scope model (scopes.py)
  - is_scoped(), serialize_scopes(), deserialize_scopes()
  - CredentialStore, SQLiteCredentialStore, Credential — persistence (store.py)
  - CredentialCache — two-keyed TTL lookup cache (cache.py)
  - KeyManager, init_key_manager() — key lifecycle (keys.py)
  - AuthorizationGate, AuthorizationContext, authorize_request() — per-request gate
  - KeyNotFoundError, DuplicateKeyError, MalformedScopeData,
    Unauthenticated, AuthorizationFault — error taxonomy
"""

from __future__ import annotations

from keygate.auth.cache import CredentialCache, TTLCache
from keygate.auth.keys import (
    KeyManager,
    KeyManagerNotReadyError,
    KeyNotFoundError,
    init_key_manager,
)
from keygate.auth.middleware import (
    AuthorizationContext,
    AuthorizationFault,
    AuthorizationGate,
    Unauthenticated,
    authorize_request,
    extract_api_key,
    requires_authorization,
)
from keygate.auth.scopes import (
    AppScope,
    GlobalScope,
    MalformedScopeData,
    Scope,
    ScopedResources,
    deserialize_scopes,
    is_scoped,
    scopes_match,
    serialize_scopes,
)
from keygate.auth.store import (
    Credential,
    CredentialStore,
    DuplicateKeyError,
    SQLiteCredentialStore,
)

__all__ = [
    "AppScope",
    "GlobalScope",
    "Scope",
    "ScopedResources",
    "is_scoped",
    "scopes_match",
    "serialize_scopes",
    "deserialize_scopes",
    "Credential",
    "CredentialStore",
    "SQLiteCredentialStore",
    "CredentialCache",
    "TTLCache",
    "KeyManager",
    "init_key_manager",
    "AuthorizationContext",
    "AuthorizationGate",
    "authorize_request",
    "extract_api_key",
    "requires_authorization",
    "KeyNotFoundError",
    "KeyManagerNotReadyError",
    "DuplicateKeyError",
    "MalformedScopeData",
    "Unauthenticated",
    "AuthorizationFault",
]
