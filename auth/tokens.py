"""
auth/tokens.py -- Access tokens, refresh tokens, and password hashing.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with JWT_SECRET and
       carry the user id (sub), email, role, and expiry. Verification returns
       None on any failure -- the route layer turns that into a 401.

  Refresh tokens: secrets.token_hex(32) gives 256 bits of entropy from the
       OS CSPRNG. Only SHA-256(raw_token) is stored. A plain digest is enough
       here (no HMAC, no Argon2): the input is already a uniformly random
       256-bit value, so there is nothing to brute-force.

  Passwords: argon2-cffi PasswordHasher (Argon2id). Argon2 is memory-hard,
       which makes GPU/ASIC brute-force of low-entropy passwords expensive.
       The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether an
       email exists [C1].

  Secrets: sourced from core.config.get_settings(). The Settings class
       validates them at startup [M6][M7].

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from jose import JWTError, jwt

from auth.models import Identity, User
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("authgate.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

REFRESH_TOKEN_BYTES = 32

# ---------------------------------------------------------------------------
# Password hashing (Argon2id)
# ---------------------------------------------------------------------------

_hasher = PasswordHasher()


def hash_password(plain: str) -> str:
    """Return an Argon2id hash (PHC string format) of the given password."""
    return _hasher.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the Argon2 hash.

    A malformed stored hash counts as a mismatch rather than an error.
    """
    try:
        return _hasher.verify(hashed, plain)
    except (VerificationError, InvalidHashError):
        return False


def password_needs_rehash(hashed: str) -> bool:
    """Return True if the hash was produced with outdated Argon2 parameters."""
    return _hasher.check_needs_rehash(hashed)


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


# ---------------------------------------------------------------------------
# Access tokens (JWT encode / decode)
# ---------------------------------------------------------------------------


def create_access_token(user: User, expires_delta: timedelta | None = None) -> str:
    """Encode a signed JWT carrying the user's id, email and role.

    Args:
        user:          The user the token is issued for (must be persisted).
        expires_delta: Lifetime of the token. Defaults to
                       Settings.access_token_ttl_minutes.
    """
    lifetime = expires_delta if expires_delta is not None else timedelta(minutes=_settings.access_token_ttl_minutes)
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, _settings.jwt_secret, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> Identity | None:
    """Verify a JWT and return its Identity, or None on any failure.

    Bad signature, expired exp claim, missing claims and a non-numeric
    subject are all treated the same: no identity.
    """
    try:
        payload = jwt.decode(token, _settings.jwt_secret, algorithms=[_ALGORITHM])
        return Identity(
            user_id=int(payload["sub"]),
            email=payload["email"],
            role=payload["role"],
        )
    except (JWTError, KeyError, TypeError, ValueError):
        return None


def parse_bearer_authorization(header_value: str | None) -> Identity | None:
    """Resolve an Authorization header of the literal form "Bearer <token>".

    Any other scheme, a missing token, or extra segments yield None -- a
    malformed header is "no identity", never an error.
    """
    if not header_value:
        return None
    parts = header_value.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return decode_access_token(parts[1])


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def mint_refresh_token() -> str:
    """Generate a new opaque refresh token: 32 CSPRNG bytes as 64 hex chars."""
    return secrets.token_hex(REFRESH_TOKEN_BYTES)


def hash_refresh_token(raw_token: str) -> str:
    """Return SHA-256(raw_token) as 64 hex chars. Deterministic lookup key."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Password authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs Argon2 whether or not the user exists, so an attacker cannot
    tell "no such email" from "wrong password" by response time:
    - Unknown email or OAuth-only account: verify against _DUMMY_HASH
    - Wrong password: verify against the real hash

    On success, transparently upgrades a hash made with outdated parameters.
    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.password_hash is None:
        # Equalize timing -- do NOT return early before running Argon2 [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    if password_needs_rehash(user.password_hash):
        new_hash = hash_password(password)
        store.update_user(user.id, password_hash=new_hash)
        user.password_hash = new_hash
        logger.info("Upgraded password hash parameters for user_id=%s", user.id)
    return user
