"""
api/main.py -- FastAPI application entry point for SessionVault.

Exposes the session lifecycle over HTTP. The edge authorizer lives in
auth/decision.py and is deployed separately in front of this app.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (state cache, user store, session manager, purge
task) and shutdown (cancel purge task, close connections) symmetrically.

Error mapping:
  AuthError subclasses          -> their own status + {success, message, code}
  TransientInfrastructureError  -> 503 (an AuthError subclass, logged verbosely)
  HTTPException                 -> same envelope
  RequestValidationError        -> 422 with per-field errors
  anything else                 -> generic 500, stack trace to the log only
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, TransientInfrastructureError
from auth.sessions import SessionManager
from auth.store import UserStore
from cache.store import ConnectionStateCache
from core.config import get_settings

VERSION = "1.0.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionvault.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired state-cache entries every TTL interval.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(_settings.connection_state_ttl_seconds)
        app.state.state_cache.purge_expired()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. State cache -- the user store consults it for the warm-connection flag.
      2. User store -- creates tables on first start.
      3. Session manager -- wraps the store.
      4. Purge task last -- references app.state.state_cache.
    """
    logger.info("SessionVault API starting up")
    app.state.state_cache = ConnectionStateCache(
        db_path=_settings.state_cache_path,
        ttl=_settings.connection_state_ttl_seconds,
        timeout=_settings.db_timeout_seconds,
    )
    app.state.user_store = UserStore(
        db_url=_settings.database_url,
        timeout=_settings.db_timeout_seconds,
        state_cache=app.state.state_cache,
    )
    app.state.session_manager = SessionManager(app.state.user_store, _settings)
    logger.info("Auth initialized (database connected=%s)", app.state.user_store.is_connected())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    app.state.state_cache.close()
    logger.info("SessionVault API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionVault API",
    description="Credential and session lifecycle: tokens, lockout, refresh and password reset.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

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
# errors uniformly.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, errors: list | None = None) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message, code=code, errors=errors).model_dump(exclude_none=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a business failure with its own status and user-safe message."""
    if isinstance(exc, TransientInfrastructureError):
        logger.error(
            "Transient infrastructure failure on %s %s: %r",
            request.method,
            request.url.path,
            exc.__cause__,
        )
    return _error(exc.status_code, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests, please try again later.")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with one entry per failing field. Submitted values are not echoed back."""
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return _error(422, "validation_error", "Validation failed", errors)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return the envelope for all FastAPI/Starlette HTTP exceptions.

    Routes raise HTTPException with detail={"code": ..., "message": ...}.
    """
    if isinstance(exc.detail, dict):
        return _error(
            exc.status_code,
            exc.detail.get("code", f"http_{exc.status_code}"),
            exc.detail.get("message", ""),
        )
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. No rate limit --
# load balancer health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness plus database reachability (503 when the database is down)."""
    try:
        connected = request.app.state.user_store.is_connected()
    except TransientInfrastructureError:
        connected = False
    body = HealthResponse(
        status="healthy" if connected else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if connected else "error"},
    )
    return JSONResponse(status_code=200 if connected else 503, content=body.model_dump())
