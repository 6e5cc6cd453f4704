"""
api/routes/auth.py -- Password authentication and session REST endpoints.

Routes:
  POST /auth/register  -- create account; returns access token, sets refresh cookie
  POST /auth/login     -- password login; returns access token, sets refresh cookie
  POST /auth/refresh   -- rotate the refresh cookie; returns a fresh access token
  POST /auth/logout    -- revoke the refresh session (if any); always 200
  GET  /me             -- current user + linked providers (Bearer token required)

Tokens:
  The access token travels in the JSON body and is sent back by the client in
  Authorization: Bearer <token>. The refresh token only ever travels in the
  httpOnly "refreshToken" cookie.

Security:
  [H2] POST /auth/register and POST /auth/login carry their own, lower rate
       limits on top of the application default (credential stuffing).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries a token.
  Login failures use one generic "bad_credentials" error for unknown email,
  OAuth-only account and wrong password alike.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from api.limiter import limiter
from api.models import LoginRequest, MeResponse, RegisterRequest, StatusResponse, TokenResponse, UserPublic
from auth.dependencies import AuthContext, get_auth_context, require_identity
from auth.models import Identity, User
from auth.sessions import IssuedSession, SessionInvalid, SessionManager, clear_refresh_cookie, set_refresh_cookie
from auth.store import UserStore
from auth.tokens import authenticate_user, create_access_token, hash_password
from core.config import get_settings
from core.messages import error_detail

logger = logging.getLogger("authgate.api.auth")

_settings = get_settings()

# Auth policy:
# - POST /auth/register: public, rate-limited
# - POST /auth/login:    public, rate-limited
# - POST /auth/refresh:  refresh cookie required
# - POST /auth/logout:   public -- clearing a cookie needs no prior auth
# - GET  /me:            Bearer access token required (require_identity)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenResponse)
@limiter.limit(_settings.register_rate_limit)  # [H2]
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password account and open its first session.

    The email uniqueness check runs before hashing so a duplicate costs no
    Argon2 work. A concurrent registration of the same email that slips past
    the check is caught by the UNIQUE constraint and reported the same way.
    """
    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_email(body.email) is not None:
        raise HTTPException(status_code=409, detail=error_detail("email_taken"))

    new_user = User(email=body.email, name=body.name, password_hash=hash_password(body.password))
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail=error_detail("email_taken")) from exc

    user = user_store.get_by_id(user_id)
    logger.info("Registered user_id=%s", user_id)
    session = _session_manager(request).issue_session(user_id)
    return _token_response(user, session)


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(_settings.login_rate_limit)  # [H2]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; open a new session.

    Uses authenticate_user() which includes timing equalization [C1]. Do NOT
    inline get_by_email() + verify_password() -- that re-introduces the
    timing attack.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        resp = JSONResponse(status_code=401, content={"error": error_detail("bad_credentials")})
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    session = _session_manager(request).issue_session(user.id)
    return _token_response(user, session)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Rotate the refresh session from the cookie and return a new access token.

    The user is re-read from the store so role or name changes since the
    last token show up immediately.
    """
    if ctx.refresh_token is None:
        raise HTTPException(status_code=401, detail=error_detail("no_session"))

    manager = _session_manager(request)
    try:
        session = manager.rotate_session(ctx.refresh_token)
    except SessionInvalid as exc:
        raise HTTPException(status_code=401, detail=error_detail("session_expired")) from exc

    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(session.user_id)
    if user is None:
        manager.revoke_session(session.raw_token)
        raise HTTPException(status_code=401, detail=error_detail("session_expired"))
    return _token_response(user, session)


@router.post("/auth/logout", response_model=StatusResponse)
def logout(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Revoke the refresh session (best effort), clear the cookie, report success.

    Logout never fails from the client's point of view: an absent, unknown or
    already-revoked token is a no-op, and a storage error is logged but the
    cookie is still cleared.
    """
    if ctx.refresh_token:
        try:
            _session_manager(request).revoke_session(ctx.refresh_token)
        except SQLAlchemyError:
            logger.exception("Failed to revoke refresh session during logout")
    resp = JSONResponse(content=StatusResponse().model_dump())
    clear_refresh_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/me", response_model=MeResponse)
def me(request: Request, identity: Identity = Depends(require_identity)) -> MeResponse:
    """Return the current user and the providers linked to the account.

    The token's claims are not trusted past signature and expiry: the subject
    must still exist, otherwise 404.
    """
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(identity.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=error_detail("user_not_found"))
    return MeResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        created_at=user.created_at or "",
        providers=[account.provider for account in user_store.list_oauth_accounts(user.id)],
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def _token_response(user: User, session: IssuedSession) -> JSONResponse:
    """Build the {accessToken, user} body and attach the refresh cookie."""
    body = TokenResponse(access_token=create_access_token(user), user=UserPublic.from_user(user))
    resp = JSONResponse(content=body.model_dump(by_alias=True))
    set_refresh_cookie(resp, session)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
