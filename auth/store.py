"""
auth/store.py -- SQLAlchemy Core persistence layer for the User aggregate.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Least exposure by default: get_by_* select only the public columns unless
  include_secrets=True is passed. hashed_password, refresh_token,
  login_attempts, lock_until, the session list (which holds live refresh
  tokens) and the password history (old hashes) never leave the store by
  accident.

  The lockout counter is advanced by a single UPDATE whose SET clauses are
  CASE expressions over the row's own columns. Two concurrent failed logins
  therefore cannot lose an increment the way a read-then-write would.

Embedded collections:
  sessions and password_history are JSON arrays in TEXT columns. Their size caps are enforced in auth/models.py
  before they reach the store.

Timestamps:
  lock_until is REAL epoch seconds so the lockout UPDATE can compare it with
  a bound parameter. Display timestamps are ISO 8601 TEXT.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    not_,
    null,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateKeyError
from auth.models import PasswordHistoryEntry, Session, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),  # always lowercase
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", Float),  # epoch seconds; NULL = never locked / cleared
    Column("last_login", String(32)),
    Column("last_login_ip", String(45)),
    Column("refresh_token", Text),
    Column("sessions", Text, nullable=False, server_default="[]"),  # JSON array
    Column("password_history", Text, nullable=False, server_default="[]"),  # JSON array
    Column("created_at", String(32), nullable=False),
)

_SECRET_COLUMNS = (
    "hashed_password",
    "refresh_token",
    "login_attempts",
    "lock_until",
    "sessions",
    "password_history",
)
_PUBLIC_COLUMNS = [c for c in _users.c if c.name not in _SECRET_COLUMNS]

# Fields update_user() accepts. Anything else is a programming error.
_UPDATABLE_FIELDS = {
    "role",
    "is_verified",
    "hashed_password",
    "password_history",
    "refresh_token",
    "sessions",
    "last_login",
    "last_login_ip",
}


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, timeout: float = 10.0) -> Engine:
    """Create an engine with a bounded lock wait.

    For SQLite, timeout is the busy timeout: a writer waiting on a lock gives
    up with OperationalError instead of blocking the request indefinitely.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for the User aggregate.

    Usage:
        store = UserStore("sqlite:///gatekeeper.db")
        user_id = store.create_user(User(username="alice", email="a@x.com", hashed_password=h))
        user = store.get_by_email("a@x.com", include_secrets=True)
        store.close()
    """

    def __init__(self, db_url: str, timeout: float = 10.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises DuplicateKeyError naming the colliding field if the username or
        email is taken. Callers usually pre-check, but the UNIQUE indexes are
        the real guard when two registrations race.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        email=user.email.strip().lower(),
                        hashed_password=user.hashed_password,
                        role=user.role,
                        is_verified=1 if user.is_verified else 0,
                        sessions=_dump_sessions(user.sessions),
                        password_history=_dump_history(user.password_history),
                        created_at=now_iso(),
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            if self.get_by_email(user.email) is not None:
                raise DuplicateKeyError("Email already registered.", field="email") from exc
            raise DuplicateKeyError("Username already taken.", field="username") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _select(self, include_secrets: bool):
        return _users.select() if include_secrets else select(*_PUBLIC_COLUMNS)

    def get_by_id(self, user_id: int, include_secrets: bool = False) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(self._select(include_secrets).where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str, include_secrets: bool = False) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        normalized = email.strip().lower()
        with self.engine.connect() as conn:
            row = conn.execute(self._select(include_secrets).where(_users.c.email == normalized)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str, include_secrets: bool = False) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(self._select(include_secrets).where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user in one statement.

        Accepted fields: see _UPDATABLE_FIELDS. sessions and password_history
        take lists of dataclasses and are JSON-encoded here. Unknown keys raise
        ValueError rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_verified" in fields:
            fields["is_verified"] = 1 if fields["is_verified"] else 0
        if "sessions" in fields:
            fields["sessions"] = _dump_sessions(fields["sessions"])
        if "password_history" in fields:
            fields["password_history"] = _dump_history(fields["password_history"])
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout state machine
    # ------------------------------------------------------------------

    def record_failed_login(
        self,
        user_id: int,
        max_attempts: int = 5,
        lock_seconds: int = 2 * 60 * 60,
        now: float | None = None,
    ) -> tuple[int, float | None]:
        """Advance the lockout state machine by one failed attempt, atomically.

        Transitions (all evaluated against the row's pre-update values):
          - lock present and expired  -> attempts = 1, lock cleared
          - otherwise                 -> attempts += 1
          - not currently locked and attempts reach max_attempts
                                      -> lock_until = now + lock_seconds

        Returns the post-update (login_attempts, lock_until).
        """
        now = time.time() if now is None else now
        lock = _users.c.lock_until
        attempts = _users.c.login_attempts
        lock_expired = and_(lock.is_not(None), lock < now)
        currently_locked = and_(lock.is_not(None), lock > now)

        stmt = (
            _users.update()
            .where(_users.c.id == user_id)
            .values(
                login_attempts=case((lock_expired, 1), else_=attempts + 1),
                lock_until=case(
                    (lock_expired, null()),
                    (and_(not_(currently_locked), attempts + 1 >= max_attempts), now + lock_seconds),
                    else_=lock,
                ),
            )
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()
            row = conn.execute(select(attempts, lock).where(_users.c.id == user_id)).fetchone()
        if row is None:
            return 0, None
        return row.login_attempts, row.lock_until

    def reset_login_attempts(self, user_id: int) -> None:
        """Return the account to the Active state: attempts = 0, lock cleared."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(login_attempts=0, lock_until=None))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# JSON column codecs
# ---------------------------------------------------------------------------


def _dump_sessions(sessions: list[Session]) -> str:
    return json.dumps([asdict(s) for s in sessions])


def _dump_history(history: list[PasswordHistoryEntry]) -> str:
    return json.dumps([asdict(h) for h in history])


def _load_sessions(raw: str | None) -> list[Session]:
    return [Session(**item) for item in json.loads(raw or "[]")]


def _load_history(raw: str | None) -> list[PasswordHistoryEntry]:
    return [PasswordHistoryEntry(**item) for item in json.loads(raw or "[]")]


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    # Secret columns are absent from default reads; getattr falls back to the
    # dataclass defaults in that case.
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        role=row.role,
        is_verified=bool(row.is_verified),
        hashed_password=getattr(row, "hashed_password", None),
        refresh_token=getattr(row, "refresh_token", None),
        login_attempts=getattr(row, "login_attempts", 0) or 0,
        lock_until=getattr(row, "lock_until", None),
        last_login=row.last_login,
        last_login_ip=row.last_login_ip,
        sessions=_load_sessions(getattr(row, "sessions", None)),
        password_history=_load_history(getattr(row, "password_history", None)),
        created_at=row.created_at,
    )
