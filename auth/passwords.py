"""
auth/passwords.py -- Password hashing, verification and reuse checks.

Passwords: bcrypt, used directly (no passlib wrapper). Cost comes from
Settings.bcrypt_rounds -- 12 in production, lower only under DEBUG so the test
suite stays fast. bcrypt.checkpw compares in constant time.

bcrypt only looks at the first 72 bytes of its input and newer releases raise
on anything longer, so inputs are truncated to 72 bytes before hashing and
checking. Both sides truncate identically, so verification stays consistent.

set_password() is the single entry point for changing a password. It returns
the new hash together with the updated history instead of mutating the user,
so every flow that changes a password does so explicitly and persists both
values in one write.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import bcrypt

from auth.models import PasswordHistoryEntry, User, push_password_history
from core.config import get_settings

logger = logging.getLogger("gatekeeper.auth.passwords")

_settings = get_settings()

_BCRYPT_MAX_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    salt = bcrypt.gensalt(rounds=rounds or _settings.bcrypt_rounds)
    return bcrypt.hashpw(_encode(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A missing or malformed hash is a mismatch, never an exception.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


# Timing equalization dummy hash [C1].
# Login always runs one bcrypt check, even for unknown emails, so response
# time does not reveal whether an account exists.
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Burn one bcrypt check against a throwaway hash."""
    verify_password(plain, _DUMMY_HASH)


def set_password(user: User, plain: str) -> tuple[str, list[PasswordHistoryEntry]]:
    """Hash plain for user and compute the password history that goes with it.

    If the user already has a password, its prior hash is appended to the
    history, which is trimmed to the newest Settings.password_history_size
    entries. The caller must have loaded the user with include_secrets=True,
    otherwise the prior hash is unknown and history is left unchanged.
    """
    history = list(user.password_history)
    if user.hashed_password:
        history = push_password_history(
            history,
            PasswordHistoryEntry(
                hashed_password=user.hashed_password,
                changed_at=datetime.now(timezone.utc).isoformat(),
            ),
            cap=_settings.password_history_size,
        )
    return hash_password(plain), history


def is_password_in_history(user: User, candidate: str) -> bool:
    """Return True if candidate matches any retired password in the user's history."""
    return any(verify_password(candidate, entry.hashed_password) for entry in user.password_history)
