"""
Structured Audit Logging Utility.

Every profile state change (create, rename, delete, switch, bootstrap,
migration step) is emitted as one validated JSON audit event, and
optionally persisted to the local ``audit_log`` table.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field

from profilehub.logger import StructuredLogger

__all__ = [
    "AuditEvent",
    "DetailValue",
    "load_audit_events",
    "log_audit_event",
    "persist_audit_event",
]

# Flat scalars only; structured context belongs in a model, not the audit log.
DetailValue = Union[str, int, float, bool, None]


class AuditEvent(BaseModel):
    """Schema-validated audit trail entry."""

    timestamp: str
    action: str
    entity_type: str
    entity_id: str
    user_id: str
    details: dict[str, DetailValue] = Field(default_factory=dict)


def _build_event(
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[dict[str, DetailValue]],
) -> AuditEvent:
    return AuditEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        details=details or {},
    )


def log_audit_event(
    logger: StructuredLogger,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[dict[str, DetailValue]] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> None:
    """Log a structured audit event, and persist it when *conn* is given.

    Args:
        logger: Destination logger.
        action: What happened, e.g. ``"PROFILE_CREATE"``, ``"PROFILE_SWITCH"``.
        entity_type: ``"Account"``, ``"Profile"`` or a resource table name.
        entity_id: Primary key of the affected entity.
        user_id: Account id of the actor (``"system"`` for the migration).
        details: Flat extra context.
        conn: Optional SQLite connection for the ``audit_log`` table.
            Persistence failures are logged, never raised.
    """
    event = _build_event(action, entity_type, entity_id, user_id, details)
    logger.bind(actor=user_id).info("AUDIT: %s", json.dumps(event.model_dump(), default=str))

    if conn is not None:
        try:
            persist_audit_event(conn, event)
        except sqlite3.Error as db_err:
            logger.warning("Failed to persist audit event to SQLite: %s", db_err)


def persist_audit_event(conn: sqlite3.Connection, event: AuditEvent) -> None:
    """Insert *event* into ``audit_log``.

    The row joins an open transaction (e.g. a ``batch_write`` block) and is
    committed immediately otherwise.
    """
    joined_transaction = conn.in_transaction
    conn.execute(
        """
        INSERT INTO audit_log (timestamp, action, entity_type, entity_id, user_id, details)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            event.timestamp,
            event.action,
            event.entity_type,
            event.entity_id,
            event.user_id,
            json.dumps(event.details, default=str),
        ),
    )
    if not joined_transaction:
        conn.commit()


def load_audit_events(
    conn: sqlite3.Connection,
    entity_id: Optional[str] = None,
    limit: int = 100,
) -> list[AuditEvent]:
    """Return persisted events in insertion order, optionally for one entity."""
    query = "SELECT timestamp, action, entity_type, entity_id, user_id, details FROM audit_log"
    params: tuple[object, ...] = ()
    if entity_id is not None:
        query += " WHERE entity_id = ?"
        params = (entity_id,)
    query += " ORDER BY id LIMIT ?"
    rows = conn.execute(query, (*params, limit)).fetchall()
    return [
        AuditEvent(
            timestamp=row[0],
            action=row[1],
            entity_type=row[2],
            entity_id=row[3],
            user_id=row[4],
            details=json.loads(row[5] or "{}"),
        )
        for row in rows
    ]
