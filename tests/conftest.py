"""
tests/conftest.py -- Shared test fixtures for authgate tests.

This module provides:
  - db_url: a fresh named shared-memory SQLite URI per test
  - user_store / session_store / session_manager: isolated stores on that DB
  - client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool, and because
UserStore and SessionStore each own an engine. Plain :memory: DBs are
per-connection and would present a blank schema to every other connection.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and RATE_LIMIT_ENABLED must be set before any app import:
get_settings() is cached at first call, DEBUG lets it auto-generate the
secrets, and rate limiting is switched off so tests can register and log in
freely. tests/test_rate_limit.py turns the limiter back on locally.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core import so get_settings() sees it.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.sessions import SessionManager
from auth.store import SessionStore, UserStore


@pytest.fixture
def db_url() -> str:
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def user_store(db_url: str) -> Generator[UserStore, None, None]:
    store = UserStore(db_url)
    yield store
    store.close()


@pytest.fixture
def session_store(db_url: str, user_store: UserStore) -> Generator[SessionStore, None, None]:
    # Depends on user_store so the users table (FK target) always exists first.
    store = SessionStore(db_url)
    yield store
    store.close()


@pytest.fixture
def session_manager(session_store: SessionStore) -> SessionManager:
    return SessionManager(session_store, ttl_days=14)


def _patch_lifespan(user_store: UserStore, session_store: SessionStore, session_manager: SessionManager):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores into app.state so routes see the isolated DB, and
    starts with an empty OAuth registry so no provider is configured unless a
    test registers a fake adapter.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.session_store = session_store
        app.state.session_manager = session_manager
        app.state.oauth_providers = {}
        yield

    return test_lifespan


@pytest.fixture
def client(
    user_store: UserStore,
    session_store: SessionStore,
    session_manager: SessionManager,
) -> Generator[TestClient, None, None]:
    """TestClient over the real app with isolated stores.

    follow_redirects=False so OAuth tests can assert on the redirect
    Location and the Set-Cookie of the callback response itself.
    """
    app.router.lifespan_context = _patch_lifespan(user_store, session_store, session_manager)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as test_client:
        yield test_client


# ---------------------------------------------------------------------------
# Helpers shared by the route tests
# ---------------------------------------------------------------------------

STRONG_PASSWORD = "Abcdef1!"


def use_refresh_token(client: TestClient, token: str | None) -> None:
    """Make the next request carry exactly this refresh cookie (or none)."""
    client.cookies.clear()
    if token:
        client.cookies.set("refreshToken", token)


def refresh_cookie_from(resp) -> str | None:
    return resp.cookies.get("refreshToken")


def set_cookie_headers(resp) -> list[str]:
    return [v for k, v in resp.headers.multi_items() if k.lower() == "set-cookie"]
