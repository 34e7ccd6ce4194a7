"""
api/main.py -- FastAPI application entry point for Gatekeeper.

Exposes the authentication core over HTTP: login with optional email 2FA,
password reset, bearer sessions, and the security/admin views.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (engine, services, email notifier) and shutdown
(notifier executor, engine pool) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.email import router as email_router
from api.routes.v1.security import router as security_router
from auth.activity import ActivityLogger
from auth.codes import VerificationCodeManager
from auth.lockout import LockoutGuard
from auth.login import LoginOrchestrator
from auth.ratelimit import RateLimiter
from auth.sessions import SessionManager
from auth.store import UserStore
from core.config import Settings, get_settings
from core.db import create_db_engine, to_iso, utcnow
from core.errors import AuthError, RateLimited
from notify.email import EmailNotifier

__version__ = "0.1.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if _settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatekeeper.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    engine: Engine,
    settings: Settings,
    notifier: EmailNotifier | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    """Construct every service over one engine and publish it on app.state.

    Shared by the real lifespan and the test lifespan so both wire the
    object graph the same way. A notifier is built from settings unless one
    is passed in.
    """
    if notifier is None:
        notifier = EmailNotifier(settings, engine, clock=clock)
    activity = ActivityLogger(engine, clock=clock)
    user_store = UserStore(engine, clock=clock)
    lockout = LockoutGuard(
        engine,
        notifier=notifier,
        activity=activity,
        threshold=settings.max_failed_attempts,
        lockout_duration=timedelta(minutes=settings.lockout_duration_minutes),
        clock=clock,
    )
    codes = VerificationCodeManager(engine, max_attempts=settings.code_max_attempts, clock=clock)
    rate_limiter = RateLimiter(
        engine,
        email_window=timedelta(minutes=settings.email_rate_limit_window_minutes),
        email_max=settings.email_rate_limit_max,
        code_window=timedelta(minutes=settings.code_rate_limit_window_minutes),
        code_max=settings.code_rate_limit_max,
        clock=clock,
    )
    sessions = SessionManager(
        engine,
        activity=activity,
        ttl=timedelta(hours=settings.session_ttl_hours),
        max_sessions=settings.max_sessions_per_user,
        clock=clock,
    )

    app.state.engine = engine
    app.state.notifier = notifier
    app.state.activity = activity
    app.state.user_store = user_store
    app.state.lockout = lockout
    app.state.code_manager = codes
    app.state.rate_limiter = rate_limiter
    app.state.session_manager = sessions
    app.state.login = LoginOrchestrator(
        users=user_store,
        lockout=lockout,
        codes=codes,
        rate_limiter=rate_limiter,
        sessions=sessions,
        notifier=notifier,
        activity=activity,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine first -- create_all runs here, so tables exist before any
         service touches them.
      2. Services second -- all share the engine's connection pool.
      3. Notifier start last -- its executor is the only background resource.
         A configured but unreachable SMTP server is logged, not fatal.
    """
    logger.info("Gatekeeper API starting up")
    engine = create_db_engine(_settings.database_url)
    wire_services(app, engine, _settings)
    app.state.notifier.start()
    if app.state.notifier.is_configured and not app.state.notifier.verify_connection():
        logger.warning(
            "SMTP server %s:%d is unreachable; codes will fail to send", _settings.smtp_host, _settings.smtp_port
        )
    logger.info("Auth services initialized (users_present=%s)", app.state.user_store.has_users())

    yield

    app.state.notifier.close()
    engine.dispose()
    logger.info("Gatekeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatekeeper API",
    description="Password login with email two-factor, brute-force lockout, and bearer sessions.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler; latency is measured around call_next.
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
app.include_router(email_router, prefix="/api/v1", tags=["Email Verification"])
app.include_router(security_router, prefix="/api/v1", tags=["Security"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a domain denial raised anywhere below the routes.

    RateLimited also carries reset_time (ISO-8601 UTC) and a Retry-After header.
    """
    content = ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump()
    headers = {"Cache-Control": "no-store"}
    if isinstance(exc, RateLimited):
        content["reset_time"] = to_iso(exc.reset_time)
        headers["Retry-After"] = str(max(1, int((exc.reset_time - utcnow()).total_seconds())))
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the per-IP slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code", "message"}. When
    detail is already a structured dict, use it directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors (store, SMTP, bugs).

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and per-component status.

    email reports "smtp" when a provider is configured and "dev" when emails
    are only logged. No SMTP connection is opened here.
    """
    components = {"app": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        components["database"] = "error"
    components["email"] = "smtp" if _settings.smtp_host else "dev"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=__version__, components=components)
