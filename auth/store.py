"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Service and route code never touches SQL directly.

Tables:
  users           -- identity records, including pending one-time token
                     digests and their expiry timestamps.
  refresh_tokens  -- the session ledger: one row per currently valid refresh
                     token, keyed by (user_id, token_hash).

Concurrency:
  swap_refresh_token() and consume_one_time_token() are conditional writes in
  a single transaction. The loser of a race between two requests presenting
  the same token sees zero affected rows and fails; there is no
  read-modify-write window.

  Email uniqueness is a UNIQUE constraint. create_user() lets IntegrityError
  propagate so callers can map it to a conflict [M1].

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    false,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import OneTimePurpose, Role, User, normalize_email

_DEFAULT_DB_URL = "sqlite:///authx.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(20), nullable=False, server_default=Role.user.value),
    Column("is_email_verified", Boolean, nullable=False, server_default=false()),
    Column("oauth_provider", String(30)),
    Column("oauth_id", Text),
    Column("avatar", Text),
    Column("email_verification_token_hash", String(64), index=True),
    Column("email_verification_expires", String(40)),
    Column("password_reset_token_hash", String(64), index=True),
    Column("password_reset_expires", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
)

# purpose -> (digest column, expiry column)
_ONE_TIME_COLUMNS = {
    OneTimePurpose.email_verification: (
        _users.c.email_verification_token_hash,
        _users.c.email_verification_expires,
    ),
    OneTimePurpose.password_reset: (
        _users.c.password_reset_token_hash,
        _users.c.password_reset_expires,
    ),
}

_UPDATABLE_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "hashed_password",
        "role",
        "is_email_verified",
        "oauth_provider",
        "oauth_id",
        "avatar",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journaling and foreign keys on every new SQLite connection.

    PRAGMAs are per-connection in SQLite and are not inherited from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Fixed-width UTC ISO 8601 so stored timestamps compare as strings."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users and their refresh-token ledger.

    Usage:
        store = UserStore("sqlite:///authx.db")
        user_id = store.create_user(User(email="a@example.com", first_name="A", last_name="B"))
        user = store.get_by_email("A@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout_seconds: int = 10) -> None:
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # sqlite3 busy timeout: how long a writer waits for the lock
            connect_args["timeout"] = timeout_seconds
        else:
            engine_kwargs["pool_timeout"] = timeout_seconds
            engine_kwargs["pool_pre_ping"] = True
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    first_name=user.first_name,
                    last_name=user.last_name,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    is_email_verified=user.is_email_verified,
                    oauth_provider=user.oauth_provider,
                    oauth_id=user.oauth_id,
                    avatar=user.avatar,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email. The lookup is case-insensitive."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, oauth_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.oauth_provider == provider) & (_users.c.oauth_id == oauth_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def link_oauth(self, user_id: int, provider: str, oauth_id: str, avatar: str | None = None) -> None:
        """Associate an OAuth identity with an existing user record.

        The avatar is only filled in when the user has none yet.
        """
        values: dict = {"oauth_provider": provider, "oauth_id": oauth_id, "updated_at": _now_iso()}
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            if avatar:
                conn.execute(
                    _users.update().where((_users.c.id == user_id) & (_users.c.avatar.is_(None))).values(avatar=avatar)
                )

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Only names in _UPDATABLE_FIELDS are accepted; anything else raises
        ValueError (fail fast rather than silently ignore).

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user and every ledger row it owns. Returns False if not found."""
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def list_users(self, offset: int = 0, limit: int = 20, query: str | None = None) -> list[User]:
        """Return users ordered by id, optionally filtered by a substring of email or name."""
        stmt = _users.select().order_by(_users.c.id).offset(offset).limit(limit)
        if query:
            stmt = stmt.where(_search_clause(query))
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self, query: str | None = None) -> int:
        stmt = select(func.count()).select_from(_users)
        if query:
            stmt = stmt.where(_search_clause(query))
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def count_admins(self) -> int:
        """Used to block removal of the last admin account [M4]."""
        stmt = select(func.count()).select_from(_users).where(_users.c.role == Role.admin.value)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Refresh-token ledger
    # ------------------------------------------------------------------

    def add_refresh_token(self, user_id: int, token_hash: str, expires_at: datetime) -> None:
        """Record a newly issued refresh token and prune the user's expired rows."""
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.expires_at <= now)
                )
            )
            conn.execute(
                _refresh_tokens.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    created_at=now,
                    expires_at=to_iso(expires_at),
                )
            )

    def swap_refresh_token(self, user_id: int, old_hash: str, new_hash: str, expires_at: datetime) -> bool:
        """Atomically replace old_hash with new_hash in the user's ledger.

        The delete and the insert share one transaction. If old_hash is not
        present (already rotated, revoked, or never issued) nothing is
        written and False is returned.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.token_hash == old_hash)
                )
            )
            if result.rowcount != 1:
                return False
            conn.execute(
                _refresh_tokens.insert().values(
                    user_id=user_id,
                    token_hash=new_hash,
                    created_at=_now_iso(),
                    expires_at=to_iso(expires_at),
                )
            )
        return True

    def has_refresh_token(self, user_id: int, token_hash: str) -> bool:
        """Test helper, backing SessionLedger.is_active()."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_refresh_tokens.c.id).where(
                    (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.token_hash == token_hash)
                )
            ).fetchone()
        return row is not None

    def revoke_refresh_tokens(self, user_id: int) -> int:
        """Delete every ledger row for the user. Returns the number revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def count_refresh_tokens(self, user_id: int) -> int:
        """Test helper: number of ledger rows held for the user."""
        stmt = select(func.count()).select_from(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    def set_one_time_token(self, user_id: int, purpose: OneTimePurpose, token_hash: str, expires_at: datetime) -> None:
        """Store the digest of a pending one-time token, replacing any older one."""
        hash_col, expires_col = _ONE_TIME_COLUMNS[purpose]
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values({hash_col: token_hash, expires_col: to_iso(expires_at), _users.c.updated_at: _now_iso()})
            )

    def consume_one_time_token(self, purpose: OneTimePurpose, token_hash: str, now: datetime) -> User | None:
        """Find the user holding an unexpired token_hash and clear it.

        The clearing update is conditional on the digest still being present,
        so two concurrent consumers of the same token cannot both succeed.
        Returns the user as it was before clearing, or None.
        """
        hash_col, expires_col = _ONE_TIME_COLUMNS[purpose]
        with self.engine.begin() as conn:
            row = conn.execute(
                _users.select().where((hash_col == token_hash) & (expires_col > to_iso(now)))
            ).fetchone()
            if row is None:
                return None
            result = conn.execute(
                _users.update()
                .where((_users.c.id == row.id) & (hash_col == token_hash))
                .values({hash_col: None, expires_col: None})
            )
            if result.rowcount != 1:
                return None
        return _row_to_user(row)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Query helpers and row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _search_clause(query: str):
    # % and _ in the query match literally
    escaped = query.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    return or_(
        _users.c.email.like(pattern, escape="\\"),
        func.lower(_users.c.first_name).like(pattern, escape="\\"),
        func.lower(_users.c.last_name).like(pattern, escape="\\"),
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        hashed_password=row.hashed_password,
        role=row.role,
        is_email_verified=bool(row.is_email_verified),
        oauth_provider=row.oauth_provider,
        oauth_id=row.oauth_id,
        avatar=row.avatar,
        email_verification_token_hash=row.email_verification_token_hash,
        email_verification_expires=row.email_verification_expires,
        password_reset_token_hash=row.password_reset_token_hash,
        password_reset_expires=row.password_reset_expires,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )
