"""
api/main.py -- FastAPI application entry point for tenantguard.

Exposes the auth core over HTTP: login, registration, refresh rotation,
logout, force-logout and the identity/tenant/permission gates.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. correlation_id        -- tags each request with X-Correlation-ID
  2. log_requests          -- one access-log line per request
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (auth store, cache, service objects, purge task)
and shutdown (cancel purge task, close cache and DB) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.service import AuthService
from auth.store import AuthStore
from cache.store import build_cache
from core.config import get_settings
from core.errors import AppError

VERSION = "0.1.0"
CORRELATION_HEADER = "X-Correlation-ID"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tenantguard.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired SQLite cache entries every hour.

    Redis expires keys on its own, so this task is only started when the
    cache backend exposes purge_expired().
    """
    while True:
        await asyncio.sleep(60 * 60)
        purged = app.state.cache.purge_expired()
        logger.debug("Purged %d expired cache entries", purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the store, cache and services before the first request.

    Startup order matters: the cache and store must exist before the
    services that hold them, and the purge task references app.state.cache.
    """
    # Startup
    logger.info("tenantguard API starting up")
    app.state.store = AuthStore(settings.database_url)
    app.state.cache = build_cache(settings.redis_url, settings.cache_db_path)
    logger.info("Cache initialized (%s)", type(app.state.cache).__name__)
    app.state.auth_service = AuthService(app.state.store, app.state.cache, settings)
    app.state.purge_task = None
    if hasattr(app.state.cache, "purge_expired"):
        app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    if app.state.purge_task is not None:
        app.state.purge_task.cancel()
    app.state.cache.close()
    app.state.store.close()
    logger.info("tenantguard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="tenantguard API",
    description="Multi-tenant authentication, session lifecycle and role-based access control.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Every registration, @app.middleware included, wraps the stack built so far:
# the LAST one registered is the outermost.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", CORRELATION_HEADER],
    expose_headers=[CORRELATION_HEADER],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s cid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        getattr(request.state, "correlation_id", "-"),
    )
    return response


@app.middleware("http")
async def correlation_id(request: Request, call_next):
    """Reuse the caller's X-Correlation-ID or mint one, and echo it back.

    Registered last so it is outermost and the id is already on
    request.state when log_requests writes the access-log line.
    """
    cid = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
    request.state.correlation_id = cid
    response = await call_next(request)
    response.headers[CORRELATION_HEADER] = cid
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


def _cid(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


def _error(
    request: Request, status_code: int, code: str, message: str, detail: Optional[str] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=code, message=message, detail=detail, correlation_id=_cid(request))
        ).model_dump(),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an operational error with its own status code and message."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s cid=%s", exc.code, request.method, request.url.path, _cid(request))
    response = _error(request, exc.status_code, exc.code, exc.message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(request, 429, "rate_limited", "Too many requests.", detail=str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(request, 422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for non-operational errors.

    The exception and traceback go to the log under the correlation id. The
    client receives only a generic message and the id to quote.
    """
    logger.exception("Unhandled exception on %s %s cid=%s", request.method, request.url.path, _cid(request))
    return _error(request, 500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and per-component status."""
    database = "ok" if request.app.state.store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
