"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - Refresh token minting (length, alphabet, uniqueness) and hashing
  - Access token round trip, expiry, foreign signature, bad subject
  - Authorization header parsing (only the literal "Bearer <token>" form)
  - Argon2 hashing, malformed stored hashes, authenticate_user() outcomes
  - Transparent rehash of passwords stored with outdated parameters
"""

from __future__ import annotations

import string
from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher
from jose import jwt

from auth.models import Identity, User
from auth.tokens import (
    authenticate_user,
    create_access_token,
    decode_access_token,
    hash_password,
    hash_refresh_token,
    mint_refresh_token,
    parse_bearer_authorization,
    verify_password,
)
from core.config import get_settings

_HEX = set(string.hexdigits.lower())


def _user(**overrides) -> User:
    fields = {"id": 7, "email": "user@example.com", "role": "user"}
    fields.update(overrides)
    return User(**fields)


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class TestRefreshTokens:
    def test_mint_is_64_lowercase_hex_chars(self):
        token = mint_refresh_token()
        assert len(token) == 64
        assert set(token) <= _HEX

    def test_mint_is_unique(self):
        assert len({mint_refresh_token() for _ in range(50)}) == 50

    def test_hash_is_deterministic_sha256_hex(self):
        token = mint_refresh_token()
        digest = hash_refresh_token(token)
        assert digest == hash_refresh_token(token)
        assert len(digest) == 64
        assert digest != token

    def test_hash_of_known_value(self):
        assert hash_refresh_token("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


class TestAccessTokens:
    def test_round_trip(self):
        token = create_access_token(_user(role="admin"))
        assert decode_access_token(token) == Identity(user_id=7, email="user@example.com", role="admin")

    def test_default_lifetime_is_configured_ttl(self):
        token = create_access_token(_user())
        claims = jwt.get_unverified_claims(token)
        assert claims["exp"] - claims["iat"] == get_settings().access_token_ttl_minutes * 60
        assert claims["sub"] == "7"

    def test_expired_token_yields_no_identity(self):
        token = create_access_token(_user(), expires_delta=timedelta(seconds=-5))
        assert decode_access_token(token) is None

    def test_foreign_signature_yields_no_identity(self):
        now = datetime.now(timezone.utc)
        payload = {"sub": "7", "email": "user@example.com", "role": "admin", "iat": now, "exp": now + timedelta(minutes=5)}
        forged = jwt.encode(payload, "x" * 64, algorithm="HS256")
        assert decode_access_token(forged) is None

    def test_non_numeric_subject_yields_no_identity(self):
        now = datetime.now(timezone.utc)
        payload = {"sub": "abc", "email": "a@b.co", "role": "user", "iat": now, "exp": now + timedelta(minutes=5)}
        token = jwt.encode(payload, get_settings().jwt_secret, algorithm="HS256")
        assert decode_access_token(token) is None

    def test_missing_claim_yields_no_identity(self):
        now = datetime.now(timezone.utc)
        payload = {"sub": "7", "iat": now, "exp": now + timedelta(minutes=5)}
        token = jwt.encode(payload, get_settings().jwt_secret, algorithm="HS256")
        assert decode_access_token(token) is None

    def test_garbage_yields_no_identity(self):
        assert decode_access_token("not.a.jwt") is None


class TestBearerParsing:
    def test_valid_header(self):
        token = create_access_token(_user())
        identity = parse_bearer_authorization(f"Bearer {token}")
        assert identity is not None
        assert identity.user_id == 7

    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer", "Bearer ", "bearer {t}", "Token {t}", "Bearer {t} extra", "Bearer  {t}"],
    )
    def test_malformed_header_yields_no_identity(self, header):
        token = create_access_token(_user())
        value = header.format(t=token) if header else header
        assert parse_bearer_authorization(value) is None


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = hash_password("Abcdef1!")
        assert hashed.startswith("$argon2id$")
        assert verify_password("Abcdef1!", hashed)
        assert not verify_password("Abcdef1?", hashed)

    def test_malformed_stored_hash_is_a_mismatch(self):
        assert verify_password("Abcdef1!", "not-an-argon2-hash") is False


class TestAuthenticateUser:
    def test_success_returns_user(self, user_store):
        user_store.create_user(User(email="user@example.com", password_hash=hash_password("Abcdef1!")))
        user = authenticate_user(user_store, "User@Example.com", "Abcdef1!")
        assert user is not None
        assert user.email == "user@example.com"

    def test_wrong_password_returns_none(self, user_store):
        user_store.create_user(User(email="user@example.com", password_hash=hash_password("Abcdef1!")))
        assert authenticate_user(user_store, "user@example.com", "wrong") is None

    def test_unknown_email_returns_none(self, user_store):
        assert authenticate_user(user_store, "nobody@example.com", "Abcdef1!") is None

    def test_oauth_only_user_returns_none(self, user_store):
        user_store.create_user(User(email="oauth@example.com"))
        assert authenticate_user(user_store, "oauth@example.com", "Abcdef1!") is None

    def test_outdated_hash_is_upgraded_on_login(self, user_store):
        weak = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1).hash("Abcdef1!")
        user_id = user_store.create_user(User(email="old@example.com", password_hash=weak))

        user = authenticate_user(user_store, "old@example.com", "Abcdef1!")

        assert user is not None
        stored = user_store.get_by_id(user_id).password_hash
        assert stored != weak
        assert verify_password("Abcdef1!", stored)
