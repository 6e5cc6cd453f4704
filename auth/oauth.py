"""
auth/oauth.py -- Authlib OAuth provider adapters and the provider registry.

Each provider is one ProviderAdapter subclass. An adapter wraps the authlib
Starlette client registered for that provider and offers the same three
operations to the linking flow:

  authorize_redirect(request, redirect_uri) -- send the browser to the provider
  exchange_code(request) -> access token     -- fail-closed, raises ProviderError
  fetch_profile(access token) -> ProfileResult

fetch_profile() never raises. It returns an explicit ProfileResult so the
caller can tell "the provider answered but left out email or account id"
(INCOMPLETE) apart from "the provider call failed" (FAILED).

Adding a provider means adding one adapter class to ADAPTERS; the flow in
api/routes/oauth.py does not change.

Supported providers:
  google   -- single userinfo call; only a verified email is accepted [H1].
  github   -- two calls: /user for the numeric id, /user/emails for the
              primary verified email [H1].
  facebook -- single Graph API call with explicit field selection.

Security notes:
  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware. The session stores the state between the
  authorization redirect and the callback.

  Every provider call is bounded by Settings.oauth_timeout_seconds (passed to
  httpx through authlib's client_kwargs). A timeout surfaces as ProviderError
  or a FAILED profile, never as a hung request.

  Provider access tokens are never logged.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError

from auth.models import Provider
from auth.store import normalize_email
from core.config import Settings

logger = logging.getLogger("authgate.auth.oauth")


class ProviderError(Exception):
    """The provider token exchange failed. Nothing has been persisted."""


# ---------------------------------------------------------------------------
# Profile result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuthProfile:
    """Normalized profile. email is lower-cased; fields may be None until checked."""

    email: str | None
    name: str | None
    provider_account_id: str | None


class ProfileStatus(str, Enum):
    ok = "ok"
    incomplete = "incomplete"
    failed = "failed"


@dataclass(frozen=True)
class ProfileResult:
    status: ProfileStatus
    profile: OAuthProfile | None = None
    reason: str = ""

    @classmethod
    def success(cls, profile: OAuthProfile) -> ProfileResult:
        return cls(ProfileStatus.ok, profile=profile)

    @classmethod
    def incomplete(cls, reason: str) -> ProfileResult:
        return cls(ProfileStatus.incomplete, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> ProfileResult:
        return cls(ProfileStatus.failed, reason=reason)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class ProviderAdapter:
    """Base adapter. Subclasses set the class attributes and implement _load_profile()."""

    name: str = ""
    label: str = ""
    # Keyword arguments for OAuth.register() -- endpoints and scope.
    oauth_config: dict = {}

    def __init__(self, client) -> None:
        self.client = client

    async def authorize_redirect(self, request, redirect_uri: str):
        return await self.client.authorize_redirect(request, redirect_uri)

    async def exchange_code(self, request) -> str:
        """Trade the callback's authorization code for a provider access token.

        authlib reads code and state from the request and checks state
        against the session. Any failure -- provider error response, state
        mismatch, network error, timeout, token response without an
        access_token -- raises ProviderError.
        """
        try:
            token = await self.client.authorize_access_token(request)
        except (OAuthError, httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"{self.name} token exchange failed: {exc}") from exc
        access_token = token.get("access_token") if token else None
        if not access_token:
            raise ProviderError(f"{self.name} token response carried no access_token")
        return access_token

    async def fetch_profile(self, access_token: str) -> ProfileResult:
        """Fetch and normalize the provider profile. Never raises."""
        token = {"access_token": access_token, "token_type": "Bearer"}
        try:
            profile = await self._load_profile(token)
        except (OAuthError, httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            return ProfileResult.failed(f"{self.name} profile fetch failed: {exc}")
        if not profile.email or not profile.provider_account_id:
            return ProfileResult.incomplete(f"{self.name} profile is missing email or account id")
        return ProfileResult.success(profile)

    async def _load_profile(self, token: dict) -> OAuthProfile:
        raise NotImplementedError

    async def _get_json(self, url: str, token: dict, **kwargs):
        resp = await self.client.get(url, token=token, **kwargs)
        resp.raise_for_status()
        return resp.json()


def _expect_dict(payload) -> dict:
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


def _clean_email(value) -> str | None:
    if not value or not isinstance(value, str):
        return None
    return normalize_email(value) or None


def _clean_id(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


class GoogleAdapter(ProviderAdapter):
    """Single userinfo call.

    [H1] The email is only accepted when verified_email is true. A missing
    flag counts as unverified, which makes the profile incomplete.
    """

    name = Provider.google.value
    label = "Google"
    oauth_config = {
        "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "access_token_url": "https://oauth2.googleapis.com/token",  # noqa: S106 -- URL, not a password
        "api_base_url": "https://www.googleapis.com/",
        "client_kwargs": {"scope": "email profile"},
    }

    async def _load_profile(self, token: dict) -> OAuthProfile:
        data = _expect_dict(await self._get_json("oauth2/v2/userinfo", token))
        email = data.get("email") if data.get("verified_email") is True else None
        return OAuthProfile(
            email=_clean_email(email),
            name=data.get("name"),
            provider_account_id=_clean_id(data.get("id")),
        )


class GitHubAdapter(ProviderAdapter):
    """GitHub does not guarantee an email on /user. Two API calls are required:
      1. GET /user -- numeric user ID (stable subject) and display name.
      2. GET /user/emails -- find the primary verified email.

    [H1] Only the entry where both primary=true AND verified=true is accepted.
    An unverified address could belong to someone else. No such entry means
    the profile is incomplete.
    """

    name = Provider.github.value
    label = "GitHub"
    oauth_config = {
        "authorize_url": "https://github.com/login/oauth/authorize",
        "access_token_url": "https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        "api_base_url": "https://api.github.com/",
        "client_kwargs": {"scope": "read:user user:email"},
    }

    _headers = {"Accept": "application/vnd.github+json"}

    async def _load_profile(self, token: dict) -> OAuthProfile:
        profile = _expect_dict(await self._get_json("user", token, headers=self._headers))
        emails = await self._get_json("user/emails", token, headers=self._headers)
        if not isinstance(emails, list):
            raise ValueError(f"github /user/emails returned {type(emails).__name__}, expected a list")

        email: str | None = None
        for entry in emails:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
                email = entry.get("email")
                break

        return OAuthProfile(
            email=_clean_email(email),
            name=profile.get("name") or profile.get("login"),
            provider_account_id=_clean_id(profile.get("id")),
        )


class FacebookAdapter(ProviderAdapter):
    name = Provider.facebook.value
    label = "Facebook"
    oauth_config = {
        "authorize_url": "https://www.facebook.com/v18.0/dialog/oauth",
        "access_token_url": "https://graph.facebook.com/v18.0/oauth/access_token",  # noqa: S106 -- URL, not a password
        "api_base_url": "https://graph.facebook.com/v18.0/",
        "client_kwargs": {"scope": "email", "token_endpoint_auth_method": "client_secret_post"},
    }

    async def _load_profile(self, token: dict) -> OAuthProfile:
        data = _expect_dict(await self._get_json("me", token, params={"fields": "id,name,email"}))
        return OAuthProfile(
            email=_clean_email(data.get("email")),
            name=data.get("name"),
            provider_account_id=_clean_id(data.get("id")),
        )


ADAPTERS: tuple[type[ProviderAdapter], ...] = (GoogleAdapter, GitHubAdapter, FacebookAdapter)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_provider_registry(settings: Settings) -> dict[str, ProviderAdapter]:
    """Register every provider that has both client ID and secret configured.

    Built once at startup (lifespan) and stored on app.state. Providers
    without credentials are absent from the returned dict; their routes
    answer 501 instead of failing at import time.
    """
    oauth = OAuth()
    registry: dict[str, ProviderAdapter] = {}
    for adapter_cls in ADAPTERS:
        client_id = getattr(settings, f"{adapter_cls.name}_client_id")
        client_secret = getattr(settings, f"{adapter_cls.name}_client_secret")
        if not (client_id and client_secret):
            logger.warning("%s OAuth credentials not configured.", adapter_cls.label)
            continue
        config = dict(adapter_cls.oauth_config)
        config["client_kwargs"] = {**config.get("client_kwargs", {}), "timeout": settings.oauth_timeout_seconds}
        client = oauth.register(
            name=adapter_cls.name,
            client_id=client_id,
            client_secret=client_secret,
            **config,
        )
        registry[adapter_cls.name] = adapter_cls(client)
        logger.info("%s OAuth provider registered", adapter_cls.label)
    return registry


def get_enabled_providers(registry: dict[str, ProviderAdapter]) -> list[dict]:
    """Return [{"name", "label"}] for every configured provider.

    Used by GET /auth/providers so the web client renders only working buttons.
    """
    return [{"name": adapter.name, "label": adapter.label} for adapter in registry.values()]
