"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore (users + oauth_accounts) and SessionStore (refresh_sessions) are
the repositories; the _row_to_* functions are the mappers. Route and flow
code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(provider, provider_account_id) on oauth_accounts is enforced in SQL.
  Both columns are NOT NULL, so SQLite's "NULLs are distinct" rule does not
  weaken the constraint.

  refresh_sessions stores only SHA-256 hashes of refresh tokens. See
  auth/tokens.py for why a plain digest is sufficient.

Ownership:
  refresh_sessions.user_id and oauth_accounts.user_id reference users.id with
  ON DELETE CASCADE. Deleting a user removes its sessions and OAuth links.
  SQLite only honours this with PRAGMA foreign_keys=ON, set per connection.

Timestamps:
  UTC ISO 8601 strings with fixed microsecond precision. Fixed width means
  lexical comparison in SQL (expires_at > :now) is chronological comparison.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import OAuthAccount, RefreshSession, User

logger = logging.getLogger("authgate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("name", String(100)),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
)

_refresh_sessions = Table(
    "refresh_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),  # NULL = active
    Column("created_at", String(32), nullable=False),
)

_oauth_accounts = Table(
    "oauth_accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("access_token", Text),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_oauth_provider_account"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _create_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Format an aware datetime as a fixed-width UTC ISO 8601 string."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and OAuthAccount entities.

    Usage:
        store = UserStore("sqlite:///./authgate.db")
        user_id = store.create_user(User(email="a@example.com", password_hash=hash_password("...")))
        user = store.get_by_email("A@example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _create_engine(db_url)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers should catch IntegrityError as a signal that a concurrent
        request already created the record.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    name=user.name,
                    password_hash=user.password_hash,
                    role=user.role,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields (name, role, password_hash) on an existing user.

        Returns True if a row was updated, False if user_id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user. Sessions and OAuth links cascade.

        Returns True if deleted, False if not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OAuth account queries
    # ------------------------------------------------------------------

    def get_oauth_account(self, provider: str, provider_account_id: str) -> OAuthAccount | None:
        """Look up the link for one external identity. Returns None if unlinked."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _oauth_accounts.select().where(
                    (_oauth_accounts.c.provider == provider)
                    & (_oauth_accounts.c.provider_account_id == provider_account_id)
                )
            ).fetchone()
        return _row_to_oauth_account(row) if row is not None else None

    def upsert_oauth_account(self, account: OAuthAccount) -> None:
        """Create the link for (provider, provider_account_id) or overwrite it.

        An existing row gets its access token, account id and owning user
        replaced. If a concurrent callback inserted the same pair first, the
        unique constraint fires and the insert degrades to an update.
        """
        existing = self.get_oauth_account(account.provider, account.provider_account_id)
        if existing is None:
            try:
                with self.engine.connect() as conn:
                    conn.execute(
                        _oauth_accounts.insert().values(
                            provider=account.provider,
                            provider_account_id=account.provider_account_id,
                            access_token=account.access_token,
                            user_id=account.user_id,
                            created_at=_now_iso(),
                        )
                    )
                    conn.commit()
                return
            except IntegrityError:
                existing = self.get_oauth_account(account.provider, account.provider_account_id)
                if existing is None:
                    raise

        if existing.user_id != account.user_id:
            logger.warning(
                "Re-linking %s account %s from user_id=%s to user_id=%s",
                account.provider,
                account.provider_account_id,
                existing.user_id,
                account.user_id,
            )
        with self.engine.connect() as conn:
            conn.execute(
                _oauth_accounts.update()
                .where(_oauth_accounts.c.id == existing.id)
                .values(
                    access_token=account.access_token,
                    provider_account_id=account.provider_account_id,
                    user_id=account.user_id,
                )
            )
            conn.commit()

    def list_oauth_accounts(self, user_id: int) -> list[OAuthAccount]:
        """Return every OAuth link owned by a user, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _oauth_accounts.select()
                .where(_oauth_accounts.c.user_id == user_id)
                .order_by(_oauth_accounts.c.id)
            ).fetchall()
        return [_row_to_oauth_account(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for RefreshSession records, keyed by token hash."""

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _create_engine(db_url)

    def create(self, session: RefreshSession) -> int:
        """Insert a new active session and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_sessions.insert().values(
                    token_hash=session.token_hash,
                    user_id=session.user_id,
                    expires_at=session.expires_at,
                    revoked_at=None,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_hash(self, token_hash: str) -> RefreshSession | None:
        """Return the session for a token hash whatever its state."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_sessions.select().where(_refresh_sessions.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def claim(self, token_hash: str) -> int | None:
        """Atomically revoke an active, unexpired session and return its user_id.

        The find and the revoke are one conditional UPDATE, so the database
        serializes concurrent claims of the same hash: exactly one caller sees
        rowcount == 1, every other caller gets None. Returns None when the
        session does not exist, is already revoked, or has expired.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_sessions.update()
                .where(
                    (_refresh_sessions.c.token_hash == token_hash)
                    & (_refresh_sessions.c.revoked_at.is_(None))
                    & (_refresh_sessions.c.expires_at > now)
                )
                .values(revoked_at=now)
            )
            if result.rowcount != 1:
                return None
            return conn.execute(
                select(_refresh_sessions.c.user_id).where(_refresh_sessions.c.token_hash == token_hash)
            ).scalar_one()

    def revoke(self, token_hash: str) -> bool:
        """Stamp revoked_at on an unrevoked session.

        Returns True if a session was revoked, False if none matched (unknown
        hash or already revoked).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_sessions.update()
                .where((_refresh_sessions.c.token_hash == token_hash) & (_refresh_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def list_for_user(self, user_id: int) -> list[RefreshSession]:
        """Return every session (active or revoked) for a user, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_sessions.select()
                .where(_refresh_sessions.c.user_id == user_id)
                .order_by(_refresh_sessions.c.id)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=row.role,
        created_at=row.created_at,
    )


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
        created_at=row.created_at,
    )


def _row_to_oauth_account(row) -> OAuthAccount:
    return OAuthAccount(
        id=row.id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        access_token=row.access_token,
        user_id=row.user_id,
        created_at=row.created_at,
    )
