"""
api/main.py -- FastAPI application entry point for authgate.

Run with:      uvicorn asgi:app --reload
               python main.py

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- lets the web app call the API with credentials
  3. SlowAPIMiddleware     -- enforces the default rate limit on undecorated routes
  4. SessionMiddleware     -- signed cookie holding authlib's OAuth state

Lifespan builds the process-wide collaborators once (stores, session
manager, OAuth provider registry), hangs them on app.state, and tears them
down symmetrically on shutdown. Route handlers read them from app.state;
nothing is imported as a module-level singleton.
"""

from __future__ import annotations

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
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, FieldError, StatusResponse
from api.routes.auth import router as auth_router
from api.routes.oauth import router as oauth_router
from auth.oauth import build_provider_registry
from auth.sessions import SessionManager
from auth.store import SessionStore, UserStore
from core.config import get_settings
from core.messages import message

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown (uvicorn triggers it on SIGINT/SIGTERM).

    Startup order matters:
      1. Stores first -- they create the schema.
      2. Session manager second -- wraps the session store.
      3. OAuth registry last -- logs which providers are (not) configured.
    """
    logger.info("authgate API starting up")
    app.state.user_store = UserStore(_settings.database_url)
    app.state.session_store = SessionStore(_settings.database_url)
    app.state.session_manager = SessionManager(app.state.session_store, _settings.refresh_token_ttl_days)
    logger.info("Stores initialized")
    app.state.oauth_providers = build_provider_registry(_settings)
    logger.info("OAuth providers enabled: %s", ", ".join(app.state.oauth_providers) or "none")

    yield

    app.state.session_store.close()
    app.state.user_store.close()
    logger.info("authgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authgate API",
    description="Password and OAuth sign-in with short-lived access tokens and rotating refresh sessions.",
    version="0.1.0",
    lifespan=lifespan,
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
    allow_origins=[_settings.web_base_url],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback (CSRF protection for
# the authorization code flow). It holds nothing else.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.cookie_secret,
    same_site="lax",
    https_only=_settings.secure_cookies,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Only method, path, status, latency and client host are logged --
# never headers, cookies or bodies, which carry credentials.
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

app.include_router(auth_router, tags=["Auth"])
app.include_router(oauth_router, tags=["OAuth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves the API as {"error": {"code", "message", ...}}. The code
# is the stable contract; the message comes from core/messages.py.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    text: str | None = None,
    headers: dict[str, str] | None = None,
    **extra,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=text or message(code), **extra))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers)


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 rate_limited with Retry-After.

    Kept synchronous: SlowAPIMiddleware invokes the registered handler
    without awaiting it.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    logger.warning("Rate limit hit on %s %s (%s)", request.method, request.url.path, exc.detail)
    return _error_response(429, "rate_limited", headers={"Retry-After": str(retry_after)}, detail=str(exc.detail))


# Leading loc entries naming where a value came from, not the field itself.
_LOCATION_SOURCES = {"body", "query", "path", "header", "cookie"}


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """400 validation_error listing every offending field with all its messages."""
    by_field: dict[str, list[str]] = {}
    for err in exc.errors():
        name = ".".join(str(part) for part in err.get("loc", ()) if part not in _LOCATION_SOURCES) or "body"
        by_field.setdefault(name, []).append(str(err.get("msg", "")).removeprefix("Value error, "))
    return _error_response(
        400,
        "validation_error",
        fields=[FieldError(field=name, messages=msgs) for name, msgs in by_field.items()],
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Pass structured route errors through; wrap framework errors (404, 405).

    Routes raise HTTPException(detail=error_detail(code)), which is already
    the {"code", "message"} dict and becomes the error field as-is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", text=str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 internal_error. The exception goes to the log, never to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Lives on the app itself, outside both routers. Exempt from rate limiting.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
@limiter.exempt
async def health() -> StatusResponse:
    """Return API liveness."""
    return StatusResponse()
