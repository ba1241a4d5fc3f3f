"""
api/main.py -- FastAPI application entry point for authcore.

Exposes the credential and session core over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the frontend origins
                              (credentials allowed: the refresh cookie)
  3. SessionMiddleware     -- authlib OAuth state between redirect and callback

Rate limiting is a route dependency (api.limiter.rate_limit), not middleware:
only the credential-mutating routes are gated.

Lifespan builds every component once and stores it on app.state; routes reach
them only through app.state.session_service.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import RateLimiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_user
from auth.errors import AuthError, InternalError, RateLimitedError
from auth.models import AccessClaims
from auth.refresh import RefreshTokenRotator
from auth.session import SessionService
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from auth.verification import PasswordResetManager, VerificationTokenManager
from cache.store import build_auth_cache
from core.config import Settings, get_settings
from notify.dispatch import NotificationDispatcher
from notify.email import EmailNotifier

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def build_session_service(settings: Settings, store: AccountStore, cache, dispatcher) -> SessionService:
    """Assemble the session facade from settings and the shared resources."""
    secret = settings.secret_key
    return SessionService(
        store=store,
        issuer=TokenIssuer(secret, settings.access_token_expire_seconds, issuer=settings.token_issuer),
        rotator=RefreshTokenRotator(store, secret, settings.refresh_token_expire_seconds),
        verification=VerificationTokenManager(store, secret, settings.verification_token_expire_seconds),
        resets=PasswordResetManager(store, secret, settings.password_reset_expire_seconds),
        cache=cache,
        notifier=EmailNotifier.from_settings(settings),
        dispatcher=dispatcher,
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, in reverse order of construction.

    Startup order matters:
      1. Store first -- everything else reads or writes accounts.
      2. Cache and dispatcher -- independent, but the service needs both.
      3. Session service last -- it only wires the pieces above together.
    """
    settings = get_settings()
    logger.info("authcore API starting up (environment=%s)", settings.environment)

    app.state.store = AccountStore(db_url=settings.database_url)
    logger.info("Account store initialized")
    app.state.cache = build_auth_cache(
        settings.redis_url,
        settings.auth_cache_ttl_seconds,
        socket_timeout=settings.redis_socket_timeout,
    )
    app.state.dispatcher = NotificationDispatcher(timeout=settings.notification_timeout_seconds)
    app.state.rate_limiter = RateLimiter(settings.auth_rate_limit)
    app.state.session_service = build_session_service(
        settings, app.state.store, app.state.cache, app.state.dispatcher
    )
    logger.info("Session service ready (rate limit %s)", settings.auth_rate_limit)

    yield

    # Shutdown
    app.state.dispatcher.shutdown(wait=False)
    app.state.rate_limiter.close()
    app.state.cache.close()
    app.state.store.close()
    logger.info("authcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="authcore API",
    description="Signup, login, email verification and rotating refresh-token sessions.",
    version=VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    # The SPA calls /refresh cross-origin with the httpOnly cookie.
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback. Without it authlib
# cannot verify state and the provider login fails.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.is_production)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time around call_next gives latency per response.
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
# Auth-protected API documentation
#
# /docs and /redoc are disabled on the FastAPI() constructor and replaced
# here with routes that require a valid Bearer token.
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: AccessClaims = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="authcore API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: AccessClaims = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="authcore API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Typed business errors surface verbatim with their own status and message.

    429s carry Retry-After; 401s carry WWW-Authenticate as RFC 6750 asks.
    """
    response = _error_response(exc.status_code, exc.code, exc.message, exc.detail)
    if isinstance(exc, RateLimitedError):
        response.headers["Retry-After"] = str(exc.retry_after)
    elif exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with structured error when request body or params fail validation."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Request validation failed."
    return _error_response(400, "validation_error", message, str(errors))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail. When detail is already a structured dict, use it directly as the
    error field rather than stringifying it -- str(dict) produces a Python
    repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors (store failures included).

    The traceback goes to the log only. The client receives a generic
    message; the exception text is added as detail only when DEBUG is on.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    error = InternalError(detail=f"{type(exc).__name__}: {exc}" if get_settings().debug else None)
    return _error_response(error.status_code, error.code, error.message, error.detail)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version and database reachability."""
    try:
        request.app.state.store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        return JSONResponse(
            status_code=503,
            content=HealthResponse(status="degraded", version=VERSION, database="unavailable").model_dump(),
        )
    return JSONResponse(content=HealthResponse(version=VERSION).model_dump())
