"""
auth/verification.py -- Single-use, expiring tokens for email verification and password reset.

Rows carry an absolute expiry, reads
lazily delete what they find expired, and purge_expired() is called
periodically from the app lifespan to trim the rest.

Invariants:
  - At most one live token per (user_id, type). create_token() deletes the
    previous ones first. The delete and insert are not one transaction; two
    racing requests may both succeed, and the UNIQUE index on token keeps
    each value distinct either way.
  - Tokens are consumed by delete_token() once the caller has acted on them.

Usage:
    tokens = VerificationTokenStore("sqlite:///gatekeeper.db")
    record = tokens.create_token(user_id, "email", ttl_hours=24)
    record = tokens.verify_token(record.token, "email")   # raises on invalid / expired
    tokens.delete_token(record.id)
    tokens.purge_expired()

Layer rule: no imports from api/.
"""

from __future__ import annotations

import time

from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table
from sqlalchemy.engine import Engine

from auth.errors import InvalidTokenError, TokenExpiredError
from auth.models import TOKEN_TYPES, VerificationToken
from auth.store import make_engine, now_iso
from auth.tokens import generate_verification_token

_metadata = MetaData()

_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("type", String(20), nullable=False),  # "email" | "password-reset"
    Column("expires_at", Float, nullable=False),  # epoch seconds
    Column("created_at", String(32), nullable=False),
    Index("ix_verification_tokens_user_type", "user_id", "type"),
    Index("ix_verification_tokens_expires_at", "expires_at"),
)


class VerificationTokenStore:
    def __init__(self, db_url: str, timeout: float = 10.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    def create_token(self, user_id: int, token_type: str, ttl_hours: float = 24) -> VerificationToken:
        """Replace any existing (user_id, token_type) token with a fresh one."""
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"Unknown token type: {token_type!r}")
        record = VerificationToken(
            user_id=user_id,
            token=generate_verification_token(),
            type=token_type,
            expires_at=time.time() + ttl_hours * 3600,
            created_at=now_iso(),
        )
        with self.engine.connect() as conn:
            conn.execute(_tokens.delete().where((_tokens.c.user_id == user_id) & (_tokens.c.type == token_type)))
            result = conn.execute(
                _tokens.insert().values(
                    user_id=record.user_id,
                    token=record.token,
                    type=record.type,
                    expires_at=record.expires_at,
                    created_at=record.created_at,
                )
            )
            conn.commit()
        record.id = result.inserted_primary_key[0]
        return record

    def verify_token(self, token: str, token_type: str, now: float | None = None) -> VerificationToken:
        """Return the live token record matching token and token_type.

        Raises InvalidTokenError if no such token exists, TokenExpiredError if
        it exists but has expired (the expired row is deleted on the way out).
        The caller must delete_token() after acting on a valid record.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where((_tokens.c.token == token) & (_tokens.c.type == token_type))
            ).fetchone()
        if row is None:
            raise InvalidTokenError("Invalid token.")
        record = _row_to_token(row)
        if record.is_expired(now):
            self.delete_token(record.id)
            raise TokenExpiredError("Token expired.")
        return record

    def delete_token(self, token_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_tokens.delete().where(_tokens.c.id == token_id))
            conn.commit()

    def purge_expired(self, now: float | None = None) -> int:
        """Delete every token past its expiry. Returns number of rows removed."""
        cutoff = time.time() if now is None else now
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at < cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_token(row) -> VerificationToken:
    return VerificationToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        type=row.type,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
