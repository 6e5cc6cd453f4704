"""
api/routes/oauth.py -- OAuth sign-in: provider list, redirect, and callback.

Routes:
  GET /auth/providers                   -- configured providers (public)
  GET /auth/oauth/{provider}            -- redirect the browser to the provider
  GET /auth/oauth/{provider}/callback   -- finish sign-in, set refresh cookie,
                                           redirect to {WEB_BASE_URL}/auth/complete

Callback flow (one invocation = one pass, no state kept between requests
other than authlib's state value in the signed session cookie):
  1. Exchange the code for a provider access token. Fail closed: any error
     aborts with provider_error before anything is written.
  2. Fetch the normalized profile through the provider's adapter.
  3. FAILED profile -> provider_error; INCOMPLETE profile (no email or no
     account id) -> profile_incomplete. Nothing is written in either case.
  4. Resolve or create the local user and upsert the provider link
     (auth/linking.py).
  5. Issue a refresh session, set the cookie, redirect to the web app. No
     access token in this response -- the completion page calls
     POST /auth/refresh to get one.

Unconfigured providers answer 501 on both routes.
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import RedirectResponse

from api.models import OAuthProviderInfo
from auth.linking import link_oauth_identity
from auth.models import Provider
from auth.oauth import ProfileStatus, ProviderAdapter, ProviderError, get_enabled_providers
from auth.sessions import set_refresh_cookie
from auth.store import UserStore
from core.config import get_settings
from core.messages import error_detail

logger = logging.getLogger("authgate.api.oauth")

_settings = get_settings()

_KNOWN_PROVIDERS = {p.value for p in Provider}

router = APIRouter()


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no provider is configured.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.oauth_providers)]


@router.get("/auth/oauth/{provider}")
async def oauth_start(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    The callback URL is built from API_BASE_URL, not from the request's Host
    header, so it always matches what is registered with the provider.
    """
    adapter = _get_adapter(request, provider)
    redirect_uri = f"{_settings.api_base_url.rstrip('/')}/auth/oauth/{provider}/callback"
    return await adapter.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider redirect: link or create the user and open a session."""
    adapter = _get_adapter(request, provider)

    if "code" not in request.query_params:
        # The provider reports a denied consent as ?error=..., without a code.
        code = "provider_error" if "error" in request.query_params else "missing_code"
        raise HTTPException(status_code=400, detail=error_detail(code))

    # Step 1: Exchange code for token (authlib handles CSRF via session state)
    try:
        access_token = await adapter.exchange_code(request)
    except ProviderError:
        logger.warning("OAuth token exchange failed for provider %r", provider, exc_info=True)
        raise HTTPException(status_code=400, detail=error_detail("provider_error")) from None

    # Step 2-3: Normalized profile, complete or abort
    result = await adapter.fetch_profile(access_token)
    if result.status is ProfileStatus.failed:
        logger.warning("OAuth profile fetch failed: %s", result.reason)
        raise HTTPException(status_code=400, detail=error_detail("provider_error"))
    if result.status is ProfileStatus.incomplete:
        logger.warning("OAuth sign-in rejected: %s", result.reason)
        raise HTTPException(status_code=400, detail=error_detail("profile_incomplete"))

    # Step 4: Local user + provider link
    user_store: UserStore = request.app.state.user_store
    user = link_oauth_identity(user_store, provider, result.profile, access_token)

    # Step 5: Refresh session, cookie, redirect
    session = request.app.state.session_manager.issue_session(user.id)
    resp = RedirectResponse(f"{_settings.web_base_url.rstrip('/')}/auth/complete", status_code=302)
    set_refresh_cookie(resp, session)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _get_adapter(request: Request, provider: str) -> ProviderAdapter:
    if provider not in _KNOWN_PROVIDERS:
        raise HTTPException(status_code=404, detail=error_detail("unknown_provider"))
    adapter = request.app.state.oauth_providers.get(provider)
    if adapter is None:
        raise HTTPException(status_code=501, detail=error_detail("provider_not_configured"))
    return adapter
