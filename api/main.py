"""
api/main.py -- FastAPI application entry point for the storefront auth service.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client
  2. issue_csrf_cookie     -- fresh XSRF-TOKEN nonce on every response
  3. add_rate_limit_headers -- RateLimit-* headers for rate-limited routes
  4. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  5. CORSMiddleware        -- browser origins; allows credentials + X-CSRF-Token
  6. SlowAPIMiddleware     -- global per-IP limit from api.limiter

Per-route checks (per-action rate limit, CSRF verification, session, role)
are NOT middleware: each route declares an explicit guard pipeline, see
api/guards.py.

Lifespan builds the UserStore, AuthService and RateLimiter on app.state and
starts the action-token purge task; shutdown tears them down symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.csrf import CSRF_COOKIE_NAME, CSRF_HEADER_NAME, new_csrf_nonce
from auth.errors import AccountLocked, AuthError, RateLimited
from auth.ratelimit import RATE_LIMIT_HEADERS, RateLimiter, WindowState
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("storefront.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


PURGE_INTERVAL_SECONDS = 60 * 60


async def _purge_loop(app: FastAPI) -> None:
    """Clear expired action-token hashes every PURGE_INTERVAL_SECONDS.

    Expired hashes never match a lookup, so this only bounds stale data.
    The store call is blocking; it runs in the default executor. A failed
    pass is logged and the next one runs on schedule.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            cleared = await asyncio.to_thread(app.state.user_store.purge_expired_action_tokens)
        except Exception:
            logger.exception("Action token purge failed; retrying in %ds", PURGE_INTERVAL_SECONDS)
            continue
        if cleared:
            logger.info("Purged %d expired action tokens", cleared)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("Storefront auth API starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.auth_service = AuthService(app.state.user_store)
    app.state.rate_limiter = RateLimiter()
    logger.info("Auth initialized (users_present=%s)", app.state.user_store.has_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("Storefront auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Storefront Auth API",
    description="Accounts, sessions, password and email lifecycles for the storefront.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST registered class
# middleware is the outermost. Register innermost first.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization", CSRF_HEADER_NAME],
    expose_headers=["Retry-After", *RATE_LIMIT_HEADERS],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Rate limit headers middleware
#
# RateLimitGuard leaves the window state on request.state; admitted requests
# report it the same way a 429 does.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def add_rate_limit_headers(request: Request, call_next):
    response = await call_next(request)
    window = getattr(request.state, "rate_limit", None)
    if window is not None:
        response.headers.update(window.headers())
    return response


# ---------------------------------------------------------------------------
# CSRF cookie middleware
#
# Double-submit scheme: every response carries a fresh random nonce in a
# JavaScript-readable cookie. Mutating routes run CsrfGuard, which compares
# the cookie the browser sends back with the X-CSRF-Token header.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def issue_csrf_cookie(request: Request, call_next):
    response = await call_next(request)
    response.set_cookie(
        CSRF_COOKIE_NAME,
        value=new_csrf_nonce(),
        httponly=False,
        samesite="strict",
        secure=settings.secure_cookies,
    )
    return response


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

app.include_router(auth_router, prefix=settings.api_prefix, tags=["Auth"])
app.include_router(users_router, prefix=settings.api_prefix, tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy onto HTTP status codes (see auth/errors.py)."""
    detail = None
    if isinstance(exc, AccountLocked):
        detail = exc.until.isoformat()
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, detail=detail)).model_dump(),
    )
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
        if exc.limit is not None:
            response.headers.update(WindowState(exc.limit, 0, exc.retry_after).headers())
    if exc.status_code == 401:
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the global slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests from this IP, please try again later.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 when the request body or path params fail validation."""
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
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

    The raw exception is written to the server log only, never to the
    response body.
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
# Defined directly in main.py so it is always reachable regardless of router
# registration state. Exempt from the global limit -- load balancer checks
# must not be throttled.
# ---------------------------------------------------------------------------


@app.get(f"{settings.api_prefix}/health", response_model=HealthResponse, tags=["Health"])
@limiter.exempt
async def health():
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
