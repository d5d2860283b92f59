"""
auth/audit.py -- Append-only audit trail of security events.

record() is best-effort: a failed write is logged server-side and swallowed,
never raised. The action being audited has already happened by the time it
is recorded, and its response must not depend on the audit table.

Entries are never updated or deleted through this class.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.models import AUDIT_ACTIONS, AUDIT_STATUSES, AuditLogEntry
from auth.store import make_engine, now_iso

logger = logging.getLogger("gatekeeper.auth.audit")

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),  # NULL for anonymous failures
    Column("action", String(30), nullable=False),
    Column("status", String(10), nullable=False, server_default="success"),
    Column("ip", String(45)),
    Column("user_agent", String(500)),
    Column("details", Text),  # JSON object
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_logs_user_created", "user_id", "created_at"),
    Index("ix_audit_logs_action_created", "action", "created_at"),
)


class AuditLog:
    def __init__(self, db_url: str, timeout: float = 10.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    def record(self, entry: AuditLogEntry) -> None:
        """Write a single audit entry. Never raises."""
        try:
            if entry.action not in AUDIT_ACTIONS:
                raise ValueError(f"Unknown audit action: {entry.action!r}")
            if entry.status not in AUDIT_STATUSES:
                raise ValueError(f"Unknown audit status: {entry.status!r}")
            with self.engine.connect() as conn:
                conn.execute(
                    _audit_logs.insert().values(
                        user_id=entry.user_id,
                        action=entry.action,
                        status=entry.status,
                        ip=entry.ip,
                        user_agent=(entry.user_agent or "")[:500] or None,
                        details=json.dumps(entry.details or {}, default=str),
                        created_at=now_iso(),
                    )
                )
                conn.commit()
            logger.info("Audit: %s %s user=%s", entry.action, entry.status, entry.user_id or "anonymous")
        except Exception:
            logger.exception("Failed to write audit entry for action %s", entry.action)

    def query(
        self,
        user_id: int | None = None,
        action: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLogEntry], int]:
        """Return (entries newest first, total matching) for the given filters."""
        conditions = []
        if user_id is not None:
            conditions.append(_audit_logs.c.user_id == user_id)
        if action:
            conditions.append(_audit_logs.c.action == action)

        query = _audit_logs.select()
        count = select(func.count()).select_from(_audit_logs)
        if conditions:
            query = query.where(*conditions)
            count = count.where(*conditions)
        with self.engine.connect() as conn:
            total = conn.execute(count).scalar() or 0
            rows = conn.execute(
                query.order_by(_audit_logs.c.id.desc()).offset((page - 1) * page_size).limit(page_size)
            ).fetchall()
        return [_row_to_entry(r) for r in rows], total

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        status=row.status,
        ip=row.ip,
        user_agent=row.user_agent,
        details=json.loads(row.details or "{}"),
        created_at=row.created_at,
    )
