"""keygate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - /ping — unauthenticated liveness probe (reports key store health)

Startup sequence:
  1. load_config()        → app.state.config
  2. init_key_manager()   → app.state.keys  (store open + cloud key in place)
  3. AuthorizationGate    → app.state.gate
  4. app.state.ready = True

Shutdown (reverse): ready = False → close key manager (cache cleared, store closed)
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.routing import APIRouter

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from keygate.auth.keys import KeyManager, init_key_manager
from keygate.auth.limiter import limiter
from keygate.auth.middleware import AuthorizationGate
from keygate.auth.router import router as keys_router
from keygate.config import AuthConfig, Config, load_config
from keygate.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)

root_router = APIRouter(tags=["root"])


@root_router.get("/ping", response_class=PlainTextResponse)
async def ping(request: Request) -> PlainTextResponse:
    """Liveness probe. 503 until the key store is open and healthy."""
    keys: KeyManager | None = getattr(request.app.state, "keys", None)
    if keys is None or not keys.ready or not await keys.health_check():
        return PlainTextResponse("Starting", status_code=503)
    return PlainTextResponse("OK")


def create_gate(app: FastAPI, keys: KeyManager) -> AuthorizationGate:
    """Build the authorization gate over ``keys`` reading app.state.config."""

    async def _auth_settings() -> AuthConfig:
        config: Config = app.state.config
        return config.auth

    return AuthorizationGate(keys.get_scopes_for_key, _auth_settings)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("keygate starting up...")

    # load_config() raises SystemExit on invalid config, before ready=True
    config: Config = load_config()
    app.state.config = config

    # Propagates RuntimeError on key store schema mismatch → startup refused
    keys = await init_key_manager(
        db_path=Path(config.keys.db_path).expanduser(),
        cache_ttl_s=config.keys.cache_ttl_s,
    )
    app.state.keys = keys
    app.state.gate = create_gate(app, keys)

    app.state.ready = True
    logger.info("keygate ready")

    yield

    logger.info("keygate shutting down...")
    app.state.ready = False
    await keys.close()
    logger.info("keygate shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the keygate FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app()

    Returns:
        Configured FastAPI application with lifespan, routers, and middleware.
    """
    application = FastAPI(
        title="keygate",
        description="API key issuance and request authorization for the device API",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    application.state.ready = False

    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    application.add_middleware(SlowAPIMiddleware)

    application.include_router(root_router)
    application.include_router(keys_router)

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


app = create_app()
