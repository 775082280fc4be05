"""
Base Repository.

Shared infrastructure for all repositories:
- DatabaseManager reference (Supabase + SQLite)
- Logger reference
- Supabase-first / SQLite-fallback reads
- Write-through to SQLite with a ``sync_queue`` entry whenever Supabase
  cannot take the write immediately
"""

from __future__ import annotations

import json
import sqlite3
from typing import Callable, Optional, TypeVar, Union

from supabase import Client as SupabaseClient

from profilehub.database import DatabaseManager
from profilehub.logger import StructuredLogger
from profilehub.utils.string_helpers import JsonValue

T = TypeVar("T")

SyncPayload = Union[dict[str, JsonValue], list[dict[str, JsonValue]]]


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    @property
    def supabase(self) -> SupabaseClient:
        """Returns the Supabase client (raises ``RuntimeError`` when local-only)."""
        return self._db.supabase

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Returns the SQLite connection."""
        return self._db.sqlite

    def _execute_with_fallback(
        self,
        supabase_op: Callable[[], Optional[T]],
        sqlite_op: Callable[[], Optional[T]],
        default_factory: Callable[[], T],
        *,
        operation_name: str,
        on_supabase_success: Optional[Callable[[T], None]] = None,
    ) -> T:
        """Execute a read with Supabase-first, SQLite-fallback semantics.

        1. ``supabase_op()``; a non-``None`` result is passed to
           ``on_supabase_success`` (cache warming) and returned.
        2. ``sqlite_op()``; a non-``None`` result is returned.
        3. ``default_factory()``.

        Inside a :meth:`DatabaseManager.batch_write` step 1 is skipped:
        the batch's own writes are only in SQLite until it commits and the
        sync worker replays them.

        Not for write paths.

        Parameters
        ----------
        supabase_op:
            Zero-argument Supabase query.  ``None`` means not found.
        sqlite_op:
            Zero-argument SQLite query.  ``None`` means not found.
        default_factory:
            Produces the typed default when both sources come up empty.
        operation_name:
            Label for log messages, e.g. ``"get (student_profiles)"``.
        on_supabase_success:
            Optional callback run on the Supabase result.  Its failures are
            logged and never mask the result.
        """
        if not self._db.in_batch:
            try:
                result = supabase_op()
                if result is not None:
                    if on_supabase_success is not None:
                        try:
                            on_supabase_success(result)
                        except Exception as cache_exc:
                            self._logger.warning(
                                "Post-Supabase callback failed for %s: %s",
                                operation_name,
                                cache_exc,
                            )
                    return result
            except Exception as exc:
                self._logger.debug("Supabase unavailable for %s: %s", operation_name, exc)

        try:
            result = sqlite_op()
            if result is not None:
                return result
        except sqlite3.Error as sqlite_exc:
            self._logger.error(
                "SQLite fallback also failed for %s: %s",
                operation_name,
                sqlite_exc,
            )
            raise

        return default_factory()

    def _write_through(
        self,
        operation: str,
        entity_id: str,
        payload: SyncPayload,
        sqlite_op: Callable[[], None],
        supabase_op: Callable[[], None],
    ) -> None:
        """Apply a write locally, then push it to Supabase.

        The SQLite write always happens first, under ``write_lock``.  When
        Supabase is unreachable, or a :meth:`DatabaseManager.batch_write`
        is open (the queue row must commit or roll back with the batch),
        the write is recorded in ``sync_queue`` for the sync worker.

        SQLite errors propagate; Supabase errors only queue.
        """
        with self._db.write_lock:
            sqlite_op()
            if self._db.in_batch or not self._db.is_online:
                self._queue_pending_sync(operation, entity_id, payload)
                return
            self._commit()

        try:
            supabase_op()
        except Exception as exc:
            self._logger.warning(
                "Supabase write %s %s/%s failed, queued for sync: %s",
                operation,
                self.TABLE,
                entity_id,
                exc,
            )
            with self._db.write_lock:
                self._queue_pending_sync(operation, entity_id, payload)

    def _commit(self) -> None:
        """Commit unless a :meth:`DatabaseManager.batch_write` is active."""
        if not self._db.in_batch:
            self.sqlite.commit()

    def _has_pending_sync(self, entity_id: str) -> bool:
        """``True`` while a local write to *entity_id* waits in ``sync_queue``.

        The local row is then newer than the server's, so cache warming
        must not overwrite it.
        """
        row = self.sqlite.execute(
            """
            SELECT 1 FROM sync_queue
            WHERE table_name = ? AND entity_id = ? AND status = 'pending'
            LIMIT 1
            """,
            (self.TABLE, entity_id),
        ).fetchone()
        return row is not None

    def _queue_pending_sync(
        self,
        operation: str,
        entity_id: str,
        payload: SyncPayload,
    ) -> None:
        """Record an operation for background sync and commit (outside a batch).

        Args:
            operation: ``insert``, ``update``, ``upsert`` or ``backfill``.
            entity_id: The ID of the affected entity.
            payload: JSON-serialisable data.
        """
        self.sqlite.execute(
            """
            INSERT INTO sync_queue (table_name, operation, entity_id, payload)
            VALUES (?, ?, ?, ?)
            """,
            (self.TABLE, operation, entity_id, json.dumps(payload, default=str)),
        )
        self._commit()
        self._logger.debug("Queued pending sync: %s %s/%s", operation, self.TABLE, entity_id)
