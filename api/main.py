"""
api/main.py -- FastAPI application entry point for AuthX.

Run with:      python main.py serve
               uvicorn asgi:app --reload

Middleware stack (registration order; Starlette wraps the last one registered
outermost, so the request logger sees every response):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- holds the OAuth state between redirect and callback
  5. log_requests          -- method, path, status, latency, client address

Lifespan builds the credential store and the auth workflow on startup and
closes the store on shutdown.
"""

from __future__ import annotations

import logging
import time
import traceback
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
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import HealthData
from api.responses import error_response, success_response
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthError
from auth.mailer import Mailer
from auth.oauth import oauth as oauth_client
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authx.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The store must exist before the service that wraps it.
    """
    logger.info("%s API starting up", settings.app_name)
    store = UserStore(settings.database_url, settings.db_pool_timeout_seconds)
    app.state.user_store = store
    app.state.mailer = Mailer.from_settings(settings)
    app.state.auth_service = AuthService.from_settings(settings, store, mailer=app.state.mailer)
    app.state.oauth = oauth_client
    if not app.state.mailer.is_configured:
        logger.warning("SMTP is not configured -- outbound email will be logged, not sent")

    yield

    store.close()
    logger.info("%s API shutdown complete", settings.app_name)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title=f"{settings.app_name} API",
    description="Authentication and user management: local accounts, OAuth login, JWT sessions.",
    version=settings.app_version,
    lifespan=lifespan,
    # Interactive docs only in development.
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware() call wraps the stack built so far.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,  # the refresh cookie must cross origins
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Refresh-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib stores the OAuth state value in the session between the
# authorization redirect and the callback (CSRF protection).
app.add_middleware(SessionMiddleware, secret_key=settings.secret_key, https_only=settings.secure_cookies)

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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {success: false, message, error?} envelope so
# clients can parse errors uniformly.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return error_response(exc.status_code, exc.message, {"code": exc.error_code})


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a rate limit is exceeded.

    Plain def: SlowAPIMiddleware calls this handler directly and expects a
    Response back, not a coroutine. Retry-After tells clients how many
    seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = error_response(429, "Too many requests, please try again later", {"code": "rate_limited"})
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {field, message} entry per failed check."""
    details = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path"))
        details.append({"field": field, "message": err.get("msg", "")})
    return error_response(400, "Validation failed", {"code": "validation_error", "details": details})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    resp = error_response(exc.status_code, str(exc.detail), {"code": f"http_{exc.status_code}"})
    if exc.headers:
        resp.headers.update(exc.headers)
    return resp


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log. It reaches the response body only in
    debug mode.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    error: dict = {"code": "internal_error"}
    if settings.debug:
        error["detail"] = str(exc)
        error["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return error_response(500, "Internal Server Error", error)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit applied -- health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Report liveness, version and per-component status."""
    db_ok = request.app.state.user_store.ping()
    components = {
        "database": "healthy" if db_ok else "unhealthy",
        "mail": "configured" if request.app.state.mailer.is_configured else "log-only",
    }
    data = HealthData(status="healthy" if db_ok else "unhealthy", version=settings.app_version, components=components)
    if not db_ok:
        return error_response(503, "Service unavailable", data.model_dump())
    return success_response("Service is healthy", data)
