"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. Dataclasses own domain shape; stores and the service do
the work. The only behaviour here is on the two bounded collections of the
User aggregate (sessions, password history) and the live lock check, because
those invariants must hold no matter which flow touches the record.

Timestamps: instants that take part in comparisons (lock_until, expires_at)
are epoch seconds (float). Display timestamps (created_at, last_login,
changed_at) are ISO 8601 strings, matching the store's text columns.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

ROLES = ("user", "moderator", "admin")
SELF_SERVICE_ROLES = ("user", "moderator")

TOKEN_TYPE_EMAIL = "email"
TOKEN_TYPE_PASSWORD_RESET = "password-reset"
TOKEN_TYPES = (TOKEN_TYPE_EMAIL, TOKEN_TYPE_PASSWORD_RESET)

AUDIT_ACTIONS = (
    "login",
    "logout",
    "register",
    "password_change",
    "password_reset",
    "email_verification",
    "email_change",
    "role_change",
    "profile_update",
    "account_lock",
    "account_unlock",
    "token_refresh",
    "session_create",
    "session_destroy",
)
AUDIT_STATUSES = ("success", "failure", "error")


@dataclass
class Session:
    """One signed-in device. token is the refresh token issued to it."""

    token: str
    ip: str | None = None
    user_agent: str | None = None
    created_at: str = ""


@dataclass
class PasswordHistoryEntry:
    hashed_password: str
    changed_at: str = ""


@dataclass
class User:
    """Represents a registered identity.

    hashed_password, refresh_token, login_attempts and lock_until are only
    populated when the store is asked for them (include_secrets=True). A
    default read leaves them at None / 0.
    """

    username: str
    email: str
    role: str = "user"  # "user", "moderator", "admin"
    id: int | None = None
    hashed_password: str | None = None
    is_verified: bool = False
    login_attempts: int = 0
    lock_until: float | None = None  # epoch seconds
    last_login: str | None = None
    last_login_ip: str | None = None
    refresh_token: str | None = None
    sessions: list[Session] = field(default_factory=list)
    password_history: list[PasswordHistoryEntry] = field(default_factory=list)
    created_at: str = ""

    @property
    def is_locked(self) -> bool:
        return is_locked(self.lock_until)


@dataclass
class VerificationToken:
    """Single-use secret proving control of an email address or authorizing a reset."""

    user_id: int
    token: str
    type: str  # "email" | "password-reset"
    expires_at: float  # epoch seconds
    id: int | None = None
    created_at: str = ""

    def is_expired(self, now: float | None = None) -> bool:
        return self.expires_at < (time.time() if now is None else now)


@dataclass
class AuditLogEntry:
    """Immutable record of a security-relevant action.

    user_id is None for anonymous failures (e.g. login with an unknown email).
    """

    action: str
    status: str = "success"
    user_id: int | None = None
    ip: str | None = None
    user_agent: str | None = None
    details: dict = field(default_factory=dict)
    id: int | None = None
    created_at: str = ""


# ---------------------------------------------------------------------------
# Aggregate rules
# ---------------------------------------------------------------------------


def is_locked(lock_until: float | None, now: float | None = None) -> bool:
    """Return True while lock_until lies in the future. Recomputed on every call."""
    if lock_until is None:
        return False
    return lock_until > (time.time() if now is None else now)


def add_session(sessions: list[Session], session: Session, cap: int = 5) -> list[Session]:
    """Append session and drop the oldest entries beyond cap. Returns a new list."""
    return [*sessions, session][-cap:]


def push_password_history(
    history: list[PasswordHistoryEntry], entry: PasswordHistoryEntry, cap: int = 5
) -> list[PasswordHistoryEntry]:
    """Append a retired password hash, keeping only the newest cap entries."""
    return [*history, entry][-cap:]
