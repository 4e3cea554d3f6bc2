"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. security_gate         -- session resolution, route tiers, security headers (api/gate.py)
  2. log_requests          -- one access-log line per request
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for the BASE_URL origin
  5. SlowAPIMiddleware     -- per-IP limits from api.limiter

Lifespan builds the store, auth backend, mailer, rate limiter and OTP policy,
starts the background sweeps, and tears everything down symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.gate import security_gate
from api.limiter import limiter
from api.models import HealthResponse
from api.responses import error_response
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.organizations import router as organizations_router
from auth.backend import SqlAuthBackend
from auth.dependencies import require_admin
from auth.mailer import Mailer
from auth.models import User
from auth.otp import OtpPolicy
from auth.store import UserStore
from core.config import get_settings
from core.messages import map_error_message
from core.ratelimit import InMemoryRateLimiter

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired session rows every hour.

    Expired sessions already fail to resolve; this only bounds table growth.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        purged = await run_in_threadpool(app.state.user_store.purge_expired_sessions)
        if purged:
            logger.info("Purged %d expired sessions", purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- the backend wraps it.
      2. Mailer and rate limiter -- independent of each other.
      3. OTP policy -- needs backend, mailer and limiter.
      4. Background tasks last -- they reference the objects above.
    """
    logger.info("AuthGate API starting up (environment=%s)", _settings.environment)
    app.state.user_store = UserStore(_settings.database_url) if _settings.database_url else UserStore()
    app.state.auth_backend = SqlAuthBackend(app.state.user_store)
    app.state.mailer = Mailer(_settings)
    app.state.rate_limiter = InMemoryRateLimiter()
    app.state.otp_policy = OtpPolicy(app.state.auth_backend, app.state.mailer, app.state.rate_limiter, _settings)
    if not app.state.mailer.enabled:
        logger.warning("SMTP not configured -- emails will be written to the log")

    await app.state.rate_limiter.start(_settings.rate_limit_sweep_seconds)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    await app.state.rate_limiter.stop()
    app.state.user_store.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Password and email-code authentication, sessions, roles and organizations.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by admin-only routes below.
    docs_url=None,
    redoc_url=None,
)

app.state.route_table = _settings.route_table()

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware() / @app.middleware call wraps everything registered
# before it, so registration runs innermost-first: SlowAPI -> CORS ->
# TrustedHost -> log_requests -> security_gate.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.trusted_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.trusted_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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


# Registered last so it is the outermost layer: its headers land on every
# response, including those produced by the middleware above.
app.middleware("http")(security_gate)

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])
app.include_router(admin_router, prefix="/api/admin", tags=["Admin"])
app.include_router(organizations_router, prefix="/api/organization", tags=["Organizations"])
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Admin-only API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(require_admin)):
    return get_swagger_ui_html(openapi_url="/openapi.json", title="AuthGate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(require_admin)):
    return get_redoc_html(openapi_url="/openapi.json", title="AuthGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope. Messages always come
# from core.messages; exception text is logged, never returned.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with the mapped rate-limit message and a Retry-After header.

    Retry-After is the length of the exceeded window in seconds.
    """
    item = getattr(getattr(exc, "limit", None), "limit", None)
    retry_after = item.get_expiry() if item is not None else 60
    logger.info("Per-IP limit exceeded on %s", request.url.path)
    return error_response(429, "rate_limited", map_error_message("Too many requests"), retry_after=retry_after)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with a static message.

    Pydantic error entries carry the offending input (possibly a password),
    so only locations and error types are logged.
    """
    logger.info(
        "Request validation failed on %s: %s",
        request.url.path,
        [(err.get("loc"), err.get("type")) for err in exc.errors()],
    )
    return error_response(400, "validation_error", map_error_message("Invalid request body"))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured error for HTTP exceptions.

    Route dependencies raise HTTPException with an already-mapped dict
    detail; it is used as the error field as-is.
    """
    if isinstance(exc.detail, dict):
        response = JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    else:
        response = error_response(exc.status_code, f"http_{exc.status_code}", map_error_message(str(exc.detail)))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", map_error_message("Internal server error"))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Public and unthrottled: load balancers must not be rate-limited.
# ---------------------------------------------------------------------------


@app.get("/api/health", response_model=HealthResponse, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version, database reachability and mail mode."""
    try:
        db_ok = await run_in_threadpool(request.app.state.user_store.ping)
    except Exception:
        logger.exception("Health check: database unreachable")
        db_ok = False
    return HealthResponse(
        status="ok" if db_ok else "degraded",
        version=VERSION,
        database="ok" if db_ok else "unavailable",
        mail="smtp" if request.app.state.mailer.enabled else "console",
    )
