"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these classes own domain shape only.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Provider(str, Enum):
    """Third-party identity providers supported by the OAuth linking flow."""

    google = "google"
    github = "github"
    facebook = "facebook"


@dataclass
class User:
    """An identity record.

    email is stored lower-cased and stripped; the store relies on that
    normalization for case-insensitive uniqueness.

    password_hash is None for OAuth-only users (they have no local password).
    """

    email: str
    role: str = "user"
    id: int | None = None
    name: str | None = None
    password_hash: str | None = None  # None = OAuth-only user
    created_at: str | None = None


@dataclass
class RefreshSession:
    """One refresh credential, active or revoked.

    Security design:
    - token_hash is SHA-256(raw_token). The raw token exists only in the
      client's httpOnly cookie and transiently in memory while it is issued.
      A stolen database therefore cannot be replayed without the cookie.
    - Sessions are never deleted on logout or rotation, only stamped with
      revoked_at. A revoked or expired session is unusable forever.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    revoked_at: str | None = None
    created_at: str | None = None


@dataclass
class OAuthAccount:
    """Link between one external identity and one local User.

    (provider, provider_account_id) is unique. access_token is the provider
    token obtained during the last successful callback; it is stored but not
    used again for authorization.
    """

    provider: str
    provider_account_id: str
    user_id: int
    access_token: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Identity:
    """Claims recovered from a verified access token."""

    user_id: int
    email: str
    role: str
