"""
api/main.py -- FastAPI application entry point for StaffAuth.

Exposes the authentication service over HTTP: login, refresh, logout,
validate and the current-session profile, plus a health probe.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests       -- one latency line per request
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter

Lifespan builds the auth components once per process and stores them on
app.state; routes and dependencies read them from there. Nothing in the auth
core is a module global, so tests swap the whole set by patching lifespan.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.audit import LoggingAuditSink
from auth.errors import AuthError, RateLimitedError
from auth.identity import HttpIdentityAuthority
from auth.ratelimit import LoginRateLimiter
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.tokens import TokenAuthority
from core.config import get_settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("staffauth.api")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth components on startup and release them on shutdown.

    Startup order follows the dependency graph: settings, then the leaves
    (tokens, store, limiter, identity client, audit sink), then AuthService,
    which receives all of them by reference.
    """
    settings = get_settings()
    logger.info("StaffAuth API starting up")

    identity = HttpIdentityAuthority(settings.identity_authority_url, settings.identity_authority_timeout)
    if not settings.identity_authority_url:
        logger.warning("IDENTITY_AUTHORITY_URL is not set -- every login will be rejected")

    app.state.settings = settings
    app.state.session_store = SessionStore()
    app.state.auth_service = AuthService(
        tokens=TokenAuthority(settings),
        sessions=app.state.session_store,
        rate_limiter=LoginRateLimiter.from_settings(settings),
        identity=identity,
        audit=LoggingAuditSink(),
        settings=settings,
    )
    logger.info(
        "Auth initialized (device_validation=%s, mismatch_action=%s)",
        settings.device_validation_enabled,
        settings.device_mismatch_action,
    )

    yield

    identity.close()
    logger.info("StaffAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="StaffAuth API",
    description="Employee authentication and session lifecycle.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

app.add_middleware(SlowAPIMiddleware)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the AuthError family to its status code and stable error code.

    Login rate-limit blocks carry Retry-After with the seconds left on the block.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=exc.error_code,
                message=exc.message,
                detail=exc.detail or None,
            )
        ).model_dump(),
    )
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        response.headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code in (401, 403, 429):
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when the slowapi request throttle trips."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    SigningError (no signing key) lands here as a 500.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and the live session count."""
    store = getattr(request.app.state, "session_store", None)
    components = {"app": "ok", "session_store": "ok" if store is not None else "unavailable"}
    if store is not None:
        components["active_sessions"] = str(store.active_count())
    return HealthResponse(version=API_VERSION, components=components)
