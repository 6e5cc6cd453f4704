"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Every request that needs credentials gets one AuthContext, built once from:
  1. The "refreshToken" cookie -- the raw refresh token, if any.
  2. Authorization: Bearer <token> header -- verified into an Identity.

FastAPI caches dependency results per request, so handlers and other
dependencies that declare Depends(get_auth_context) share the same object
and the JWT is verified at most once per request.

get_auth_context() is the soft variant (never raises).
require_identity() wraps it and raises HTTP 401 if no valid bearer token.

Layer rule: auth/dependencies.py may import from fastapi (for Request and
HTTPException) because this module is part of the FastAPI dependency
injection system. It does not import from api/.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from auth.models import Identity
from auth.sessions import REFRESH_COOKIE_NAME
from auth.tokens import parse_bearer_authorization
from core.messages import error_detail


@dataclass(frozen=True)
class AuthContext:
    """Request-scoped credentials: the raw refresh token and the bearer identity."""

    refresh_token: str | None
    identity: Identity | None


def get_auth_context(request: Request) -> AuthContext:
    """Parse the refresh cookie and the Authorization header. Never raises."""
    return AuthContext(
        refresh_token=request.cookies.get(REFRESH_COOKIE_NAME) or None,
        identity=parse_bearer_authorization(request.headers.get("Authorization")),
    )


def require_identity(ctx: AuthContext = Depends(get_auth_context)) -> Identity:
    """Require a valid bearer access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(require_identity)): ...
    """
    if ctx.identity is None:
        raise HTTPException(status_code=401, detail=error_detail("invalid_token"))
    return ctx.identity
