"""
auth/sessions.py -- Refresh-session issuance, rotation, and revocation.

SessionManager is the only code that writes refresh_sessions. Every
successful register, login, refresh and OAuth completion ends in
issue_session(); every refresh goes through rotate_session().

Rotation: presenting a refresh token revokes its session and issues a
brand-new one for the same user. A token is therefore single-use -- a
replayed token finds its session already revoked and fails. The
find-and-revoke step is SessionStore.claim(), a single conditional UPDATE,
so two concurrent rotations of the same token give one success and one
SessionInvalid.

Identity is hash equality only. Whoever presents a live raw token owns the
session; the cookie is a bearer credential.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Response

from auth.models import RefreshSession
from auth.store import SessionStore, to_iso
from auth.tokens import hash_refresh_token, mint_refresh_token
from core.config import get_settings

logger = logging.getLogger("authgate.auth.sessions")

REFRESH_COOKIE_NAME = "refreshToken"


class SessionInvalid(Exception):
    """The presented refresh token is unknown, revoked, or expired."""


@dataclass(frozen=True)
class IssuedSession:
    """A freshly minted session. raw_token goes into the cookie and nowhere else."""

    user_id: int
    raw_token: str
    expires_at: datetime


class SessionManager:
    """Orchestrates refresh sessions against a SessionStore.

    Usage:
        manager = SessionManager(session_store, ttl_days=14)
        issued = manager.issue_session(user.id)
        rotated = manager.rotate_session(issued.raw_token)   # may raise SessionInvalid
        manager.revoke_session(rotated.raw_token)
    """

    def __init__(self, store: SessionStore, ttl_days: int) -> None:
        self.store = store
        self.ttl = timedelta(days=ttl_days)

    def issue_session(self, user_id: int) -> IssuedSession:
        """Mint a refresh token, persist its hash, and return the raw token + expiry."""
        raw_token = mint_refresh_token()
        expires_at = datetime.now(timezone.utc) + self.ttl
        self.store.create(
            RefreshSession(
                user_id=user_id,
                token_hash=hash_refresh_token(raw_token),
                expires_at=to_iso(expires_at),
            )
        )
        return IssuedSession(user_id=user_id, raw_token=raw_token, expires_at=expires_at)

    def rotate_session(self, raw_token: str) -> IssuedSession:
        """Revoke the session behind raw_token and issue its replacement.

        Raises SessionInvalid if the session is missing, revoked, or expired.
        No new session is created in that case.
        """
        user_id = self.store.claim(hash_refresh_token(raw_token))
        if user_id is None:
            logger.info("Refresh rejected: session unknown, revoked, or expired")
            raise SessionInvalid("refresh session is not active")
        return self.issue_session(user_id)

    def revoke_session(self, raw_token: str) -> None:
        """Best-effort revoke. Unknown or already-revoked tokens are a no-op."""
        self.store.revoke(hash_refresh_token(raw_token))


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response: Response, session: IssuedSession) -> None:
    """Write the raw refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": sent on top-level navigations (the OAuth redirect back to
        the web app) but not on cross-site POSTs.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    expires: matches the session expiry so both lapse together.
    """
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        value=session.raw_token,
        httponly=True,
        samesite="lax",
        secure=get_settings().secure_cookies,
        path="/",
        expires=session.expires_at,
    )


def clear_refresh_cookie(response: Response) -> None:
    """Expire the refresh cookie on the client.

    Path and flags must match set_refresh_cookie(), otherwise the browser
    treats it as a different cookie and keeps the original.
    """
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        path="/",
        httponly=True,
        samesite="lax",
        secure=get_settings().secure_cookies,
    )
