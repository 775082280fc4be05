"""
Base Service Class.

Standardizes the logger pattern for all services and gives them one way
to emit audit events.
"""

from __future__ import annotations

from typing import Optional

from profilehub.database import DatabaseManager
from profilehub.logger import StructuredLogger
from profilehub.utils.audit import DetailValue, log_audit_event


class BaseService:
    """Base class for all service classes. Provides a logger.

    When a ``DatabaseManager`` is supplied, audit events are also
    persisted to the local ``audit_log`` table.
    """

    def __init__(self, logger: StructuredLogger, db: Optional[DatabaseManager] = None) -> None:
        self._logger: StructuredLogger = logger
        self._audit_db: Optional[DatabaseManager] = db

    def _audit(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        user_id: str,
        details: Optional[dict[str, DetailValue]] = None,
    ) -> None:
        if self._audit_db is None:
            log_audit_event(self._logger, action, entity_type, entity_id, user_id, details)
            return
        with self._audit_db.write_lock:
            log_audit_event(
                self._logger,
                action,
                entity_type,
                entity_id,
                user_id,
                details,
                conn=self._audit_db.sqlite,
            )
