"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      process treats the result as immutable for its whole lifetime.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional secret
      policy: dev mode generates secrets with a warning, production mode
      refuses to start without them.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. JWT signing and
       the signed OAuth state cookie both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing JWT_SECRET or
       COOKIE_SECRET is a hard startup failure. A random key in production
       would invalidate every access token on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"
    # Language of client-facing error messages. See core/messages.py.
    locale: str = "en"

    api_base_url: str = "http://localhost:4000"
    web_base_url: str = "http://localhost:3000"
    api_host: str = "0.0.0.0"  # noqa: S104 -- bind address, overridden per deployment
    api_port: int = 4000
    allowed_hosts: list[str] = ["*"]

    database_url: str = "sqlite:///./authgate.db"

    # ------------------------------------------------------------------
    # Secrets -- empty string is the "not configured" sentinel.
    # ------------------------------------------------------------------

    jwt_secret: str = ""
    cookie_secret: str = ""

    # ------------------------------------------------------------------
    # Tokens and cookies
    # ------------------------------------------------------------------

    access_token_ttl_minutes: int = 15
    refresh_token_ttl_days: int = 14
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    facebook_client_id: str = ""
    facebook_client_secret: str = ""

    # Upper bound for every call to a provider (token exchange, profile fetch).
    oauth_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    register_rate_limit: str = "5 per 15 minutes"
    login_rate_limit: str = "10 per 15 minutes"
    default_rate_limit: str = "100 per 15 minutes"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy for JWT_SECRET and COOKIE_SECRET [M7].

        Dev mode (DEBUG=true): auto-generate a random secret with a warning.
            Access tokens and OAuth state will not survive a restart --
            acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            secret is missing.

        Both modes: reject secrets shorter than 32 characters [M6].
        """
        for field in ("jwt_secret", "cookie_secret"):
            value = getattr(self, field)
            if not value:
                if self.debug:
                    value = secrets.token_hex(32)
                    setattr(self, field, value)
                    logger.warning(
                        "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                        field.upper(),
                    )
                else:
                    raise ValueError(
                        f"{field.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(value) < 32:
                raise ValueError(f"{field.upper()} must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_ttls(self) -> "Settings":
        if self.access_token_ttl_minutes <= 0:
            raise ValueError("ACCESS_TOKEN_TTL_MINUTES must be positive.")
        if self.refresh_token_ttl_days <= 0:
            raise ValueError("REFRESH_TOKEN_TTL_DAYS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
