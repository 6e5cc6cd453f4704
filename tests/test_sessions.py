"""
tests/test_sessions.py -- Unit tests for SessionManager and SessionStore.

Covers:
  - issue_session persists only the hash, with the configured expiry
  - rotate_session is single-use: the second presentation of a token fails,
    also when several threads present it at the same moment
  - rotated session belongs to the same user and carries a new token
  - expired, revoked and unknown tokens raise SessionInvalid
  - revoke_session is idempotent and ignores unknown tokens
  - deleting a user cascades to its sessions
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Response

from auth.models import RefreshSession, User
from auth.sessions import (
    REFRESH_COOKIE_NAME,
    IssuedSession,
    SessionInvalid,
    SessionManager,
    clear_refresh_cookie,
    set_refresh_cookie,
)
from auth.store import SessionStore, UserStore, to_iso
from auth.tokens import hash_refresh_token, mint_refresh_token


@pytest.fixture
def user_id(user_store) -> int:
    return user_store.create_user(User(email="session@example.com"))


class TestIssue:
    def test_stores_hash_not_raw_token(self, session_manager, session_store, user_id):
        issued = session_manager.issue_session(user_id)

        assert session_store.get_by_hash(issued.raw_token) is None
        stored = session_store.get_by_hash(hash_refresh_token(issued.raw_token))
        assert stored is not None
        assert stored.user_id == user_id
        assert stored.revoked_at is None

    def test_expiry_matches_ttl(self, session_manager, user_id):
        before = datetime.now(timezone.utc)
        issued = session_manager.issue_session(user_id)
        assert before + timedelta(days=14) <= issued.expires_at <= datetime.now(timezone.utc) + timedelta(days=14)

    def test_each_issue_is_a_new_session(self, session_manager, session_store, user_id):
        first = session_manager.issue_session(user_id)
        second = session_manager.issue_session(user_id)
        assert first.raw_token != second.raw_token
        assert len(session_store.list_for_user(user_id)) == 2


class TestRotate:
    def test_rotation_revokes_old_and_issues_new(self, session_manager, session_store, user_id):
        issued = session_manager.issue_session(user_id)

        rotated = session_manager.rotate_session(issued.raw_token)

        assert rotated.user_id == user_id
        assert rotated.raw_token != issued.raw_token
        assert session_store.get_by_hash(hash_refresh_token(issued.raw_token)).revoked_at is not None
        assert session_store.get_by_hash(hash_refresh_token(rotated.raw_token)).revoked_at is None

    def test_token_is_single_use(self, session_manager, session_store, user_id):
        issued = session_manager.issue_session(user_id)
        session_manager.rotate_session(issued.raw_token)

        with pytest.raises(SessionInvalid):
            session_manager.rotate_session(issued.raw_token)
        # The failed attempt must not have issued anything.
        assert len(session_store.list_for_user(user_id)) == 2

    def test_claim_succeeds_exactly_once(self, session_manager, session_store, user_id):
        issued = session_manager.issue_session(user_id)
        token_hash = hash_refresh_token(issued.raw_token)
        assert session_store.claim(token_hash) == user_id
        assert session_store.claim(token_hash) is None

    def test_unknown_token_is_invalid(self, session_manager):
        with pytest.raises(SessionInvalid):
            session_manager.rotate_session(mint_refresh_token())

    def test_expired_session_is_invalid(self, session_manager, session_store, user_id):
        raw = mint_refresh_token()
        session_store.create(
            RefreshSession(
                user_id=user_id,
                token_hash=hash_refresh_token(raw),
                expires_at=to_iso(datetime.now(timezone.utc) - timedelta(seconds=1)),
            )
        )
        with pytest.raises(SessionInvalid):
            session_manager.rotate_session(raw)
        # Expiry alone does not stamp revoked_at.
        assert session_store.get_by_hash(hash_refresh_token(raw)).revoked_at is None

    def test_revoked_session_is_invalid(self, session_manager, user_id):
        issued = session_manager.issue_session(user_id)
        session_manager.revoke_session(issued.raw_token)
        with pytest.raises(SessionInvalid):
            session_manager.rotate_session(issued.raw_token)


class TestConcurrentRotate:
    """Several threads present one refresh token at the same moment.

    Runs on a file-backed SQLite database so every thread gets its own
    pooled connection and the conditional UPDATE in SessionStore.claim()
    is what serializes them.
    """

    THREADS = 8
    ROUNDS = 10

    @pytest.fixture
    def file_manager(self, tmp_path):
        db_url = f"sqlite:///{tmp_path / 'sessions.db'}"
        users = UserStore(db_url)
        sessions = SessionStore(db_url)
        yield users, sessions, SessionManager(sessions, ttl_days=14)
        sessions.close()
        users.close()

    def _race(self, manager: SessionManager, raw_token: str) -> tuple[list[IssuedSession], list[Exception]]:
        barrier = threading.Barrier(self.THREADS)
        successes: list[IssuedSession] = []
        failures: list[Exception] = []

        def attempt() -> None:
            barrier.wait()
            try:
                successes.append(manager.rotate_session(raw_token))
            except Exception as exc:
                failures.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(self.THREADS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        return successes, failures

    def test_exactly_one_concurrent_rotation_wins(self, file_manager):
        users, sessions, manager = file_manager
        user_id = users.create_user(User(email="race@example.com"))

        for _ in range(self.ROUNDS):
            issued = manager.issue_session(user_id)

            successes, failures = self._race(manager, issued.raw_token)

            assert len(successes) == 1
            assert len(failures) == self.THREADS - 1
            assert all(isinstance(exc, SessionInvalid) for exc in failures)
            assert successes[0].user_id == user_id
            assert sessions.get_by_hash(hash_refresh_token(successes[0].raw_token)).revoked_at is None

        # One issued + one winning rotation per round, nothing from the losers.
        assert len(sessions.list_for_user(user_id)) == 2 * self.ROUNDS


class TestRevoke:
    def test_revoke_is_idempotent(self, session_manager, session_store, user_id):
        issued = session_manager.issue_session(user_id)
        token_hash = hash_refresh_token(issued.raw_token)

        assert session_store.revoke(token_hash) is True
        first_stamp = session_store.get_by_hash(token_hash).revoked_at
        assert session_store.revoke(token_hash) is False
        assert session_store.get_by_hash(token_hash).revoked_at == first_stamp

    def test_revoke_unknown_token_is_noop(self, session_manager):
        session_manager.revoke_session(mint_refresh_token())

    def test_revoke_leaves_other_sessions_active(self, session_manager, session_store, user_id):
        kept = session_manager.issue_session(user_id)
        dropped = session_manager.issue_session(user_id)
        session_manager.revoke_session(dropped.raw_token)
        assert session_store.get_by_hash(hash_refresh_token(kept.raw_token)).revoked_at is None


def test_deleting_user_cascades_to_sessions(session_manager, session_store, user_store, user_id):
    issued = session_manager.issue_session(user_id)
    assert user_store.delete_user(user_id) is True
    assert session_store.list_for_user(user_id) == []
    with pytest.raises(SessionInvalid):
        session_manager.rotate_session(issued.raw_token)


class TestRefreshCookie:
    def _cookie_header(self, response: Response) -> str:
        headers = [v.decode() for k, v in response.raw_headers if k == b"set-cookie"]
        assert len(headers) == 1
        return headers[0]

    def test_set_cookie_carries_token_and_flags(self, session_manager, user_id):
        issued = session_manager.issue_session(user_id)
        response = Response()

        set_refresh_cookie(response, issued)

        header = self._cookie_header(response)
        lowered = header.lower()
        assert header.startswith(f"{REFRESH_COOKIE_NAME}={issued.raw_token};")
        assert "httponly" in lowered
        assert "samesite=lax" in lowered
        assert "path=/" in lowered
        assert "expires=" in lowered

    def test_clear_cookie_matches_set_cookie_scope(self):
        response = Response()

        clear_refresh_cookie(response)

        lowered = self._cookie_header(response).lower()
        assert lowered.startswith(f"{REFRESH_COOKIE_NAME.lower()}=")
        assert "max-age=0" in lowered
        assert "httponly" in lowered
        assert "samesite=lax" in lowered
        assert "path=/" in lowered
