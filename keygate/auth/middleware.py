"""API key authorization gate.

Provides:
  - extract_api_key()        — pull the presented key from query or header
  - requires_authorization() — decide from config whether a key is needed
  - AuthorizationGate        — resolve a key into an AuthorizationContext
  - authorize_request()      — FastAPI Depends()-compatible dependency

Key extraction precedence:
  1. ?apikey=<key>                        (query parameter)
  2. Authorization: ApiKey <key>          (scheme is case-insensitive)
     Authorization: Bearer <key>
  3. ""                                   (no key presented)

Authorization is required when the device is unmanaged on a production OS
image, or managed and not in local mode.

Failure mapping:
  - Unauthenticated     → HTTP 401 (expected; logged at warning)
  - AuthorizationFault  → HTTP 503 (unexpected; logged at error)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from fastapi import HTTPException, Request

from keygate.auth.scopes import Scope, ScopedResources, is_scoped
from keygate.config import AuthConfig
from keygate.constants import API_KEY_QUERY_PARAM, OS_VARIANT_PROD
from keygate.utils.logger import get_logger, key_prefix

logger = get_logger(__name__)

_AUTH_HEADER_RE = re.compile(r"^(?:ApiKey|Bearer) (\w+)$", re.IGNORECASE | re.ASCII)

ScopeResolver = Callable[[str], Awaitable[Optional[tuple[Scope, ...]]]]
SettingsProvider = Callable[[], Awaitable[AuthConfig]]


# ─── Exceptions ───────────────────────────────────────────────────────────────


class Unauthenticated(Exception):
    """The request carries no valid key while one is required.

    HTTP mapping: 401 Unauthorized
    """

    def __init__(self, message: str = "Invalid or missing API key") -> None:
        super().__init__(message)
        self.message = message


class AuthorizationFault(Exception):
    """Resolving configuration or scopes failed unexpectedly.

    HTTP mapping: 503 Service Unavailable. Distinct from Unauthenticated.
    """

    def __init__(self, cause: BaseException) -> None:
        message = f"Unexpected error: {cause}"
        super().__init__(message)
        self.message = message
        self.cause = cause


# ─── AuthorizationContext ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class AuthorizationContext:
    """Per-request view of the presented key and what it may act on.

    is_scoped is bound to this request's resolved scopes only. A rotation that
    happens while the request is in flight does not change it.
    """

    api_key: str
    scopes: tuple[Scope, ...] = ()
    is_scoped: Callable[[ScopedResources], bool] = field(
        default=lambda resources: False, repr=False, compare=False
    )

    @classmethod
    def unrestricted(cls, api_key: str) -> "AuthorizationContext":
        """Context used when authorization is not required."""
        return cls(api_key=api_key, scopes=(), is_scoped=lambda resources: True)

    @classmethod
    def for_scopes(cls, api_key: str, scopes: tuple[Scope, ...]) -> "AuthorizationContext":
        resolved = tuple(scopes)

        def _is_scoped(resources: ScopedResources) -> bool:
            return is_scoped(resources, resolved)

        return cls(api_key=api_key, scopes=resolved, is_scoped=_is_scoped)


# ─── Helpers ──────────────────────────────────────────────────────────────────


def extract_api_key(query_apikey: Optional[str], authorization: Optional[str]) -> str:
    """Return the presented key, preferring the query parameter.

    Returns "" when neither source carries a key.
    """
    if query_apikey:
        return query_apikey
    if not authorization:
        return ""
    m = _AUTH_HEADER_RE.match(authorization)
    return m.group(1) if m else ""


def requires_authorization(settings: AuthConfig) -> bool:
    """Unmanaged devices need a key only on prod images; managed ones unless local."""
    if settings.unmanaged:
        return settings.os_variant == OS_VARIANT_PROD
    return not settings.local_mode


# ─── AuthorizationGate ────────────────────────────────────────────────────────


class AuthorizationGate:
    """Turns a presented key into an AuthorizationContext.

    Args:
        resolve_scopes:    async key → scopes (None if unknown), normally
                           KeyManager.get_scopes_for_key.
        settings_provider: async callable returning the current AuthConfig.
    """

    def __init__(self, resolve_scopes: ScopeResolver, settings_provider: SettingsProvider) -> None:
        self._resolve_scopes = resolve_scopes
        self._settings_provider = settings_provider

    async def authorize(self, api_key: str) -> AuthorizationContext:
        """Resolve ``api_key`` into a context.

        Raises:
            Unauthenticated:    Key required but absent or unknown.
            AuthorizationFault: Config or scope resolution failed unexpectedly.
        """
        try:
            settings = await self._settings_provider()
            if not requires_authorization(settings):
                return AuthorizationContext.unrestricted(api_key)

            scopes = await self._resolve_scopes(api_key) if api_key else None
        except Exception as exc:
            logger.error(
                "Authorization fault",
                error=str(exc),
                error_type=type(exc).__name__,
                key_prefix=key_prefix(api_key),
            )
            raise AuthorizationFault(exc) from exc

        if scopes is None:
            raise Unauthenticated(
                "Missing API key" if not api_key else "Invalid or revoked API key"
            )

        return AuthorizationContext.for_scopes(api_key, scopes)


# ─── FastAPI dependency ───────────────────────────────────────────────────────


async def authorize_request(request: Request) -> AuthorizationContext:
    """FastAPI dependency: authorize the request and attach request.state.auth.

    Raises:
        HTTPException(401): No valid key while one is required.
        HTTPException(503): Unexpected failure resolving config or scopes.
    """
    api_key = extract_api_key(
        request.query_params.get(API_KEY_QUERY_PARAM),
        request.headers.get("Authorization"),
    )

    gate: Optional[AuthorizationGate] = getattr(request.app.state, "gate", None)
    if gate is None:
        logger.error("Authorization gate not configured", path=str(request.url.path))
        raise HTTPException(status_code=503, detail="Unexpected error: authorization not ready")

    try:
        auth = await gate.authorize(api_key)
    except Unauthenticated as exc:
        logger.warning(
            "Authentication failed",
            reason=exc.message,
            path=str(request.url.path),
            method=request.method,
        )
        raise HTTPException(status_code=401, detail=exc.message) from exc
    except AuthorizationFault as exc:
        raise HTTPException(status_code=503, detail=exc.message) from exc

    request.state.auth = auth
    return auth
