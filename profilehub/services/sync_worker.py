"""
Outbound Sync Worker.

Repositories write SQLite first and fall back to a ``sync_queue`` row
whenever Supabase cannot take the write right away: offline, a Supabase
error, or any write made inside ``DatabaseManager.batch_write`` (the
profile migration runs entirely that way).  This worker replays those
rows to Supabase.

Rows replay oldest first.  Once a row for ``(table, entity)`` fails, later
rows for the same entity wait for the next cycle, so a profile update is
never pushed ahead of the insert it depends on.

A failed row carries its attempt count in ``error_message``
(``"Attempt 3: ..."``); at ``SYNC_MAX_ATTEMPTS`` it becomes
``permanently_failed`` and is left for manual inspection.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from typing import Callable, Optional

from profilehub.config import AppConfig
from profilehub.database import DatabaseManager
from profilehub.logger import StructuredLogger
from profilehub.repositories.base_repository import SyncPayload
from profilehub.schema import RESOURCE_TABLES
from profilehub.services.base_service import BaseService

_RE_ATTEMPT = re.compile(r"^Attempt (\d+):")

SYNCABLE_TABLES: frozenset[str] = frozenset({"accounts", "student_profiles", *RESOURCE_TABLES})

ReplayHandler = Callable[[str, str, SyncPayload], None]


def attempts_recorded(error_message: Optional[str]) -> int:
    """Attempt count stored in a ``sync_queue.error_message``; 0 if none."""
    match = _RE_ATTEMPT.match(error_message or "")
    return int(match.group(1)) if match else 0


class SyncWorkerService(BaseService):
    """Drains ``sync_queue`` to Supabase on a daemon thread.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager``; nothing is replayed while it is
        offline.
    config:
        ``SYNC_INTERVAL_S``, ``SYNC_MAX_INTERVAL_S``, ``SYNC_BATCH_SIZE``
        and ``SYNC_MAX_ATTEMPTS``.
    """

    def __init__(
        self,
        db: DatabaseManager,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._db = db
        self._config = config
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._consecutive_failures = 0
        self._handlers: dict[str, ReplayHandler] = {
            "insert": self._replay_insert,
            "update": self._replay_update,
            "upsert": self._replay_upsert,
            "delete": self._replay_delete,
            "backfill": self._replay_backfill,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the daemon thread.  No-op while one is running."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._consecutive_failures = 0
        self._thread = threading.Thread(target=self._run_loop, name="SyncWorker", daemon=True)
        self._thread.start()
        self._logger.info("Sync worker started")

    def stop(self, timeout: float = 10.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            self._logger.warning("Sync worker still running after %.0fs", timeout)
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sync_now(self) -> int:
        """Run one cycle on the calling thread; returns rows synced."""
        if not self._db.is_online:
            self._logger.info("Offline; %d queued write(s) kept", self._db.get_pending_sync_count())
            return 0
        return self._drain_once()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        try:
            while not self._stop_event.wait(timeout=self.next_interval()):
                if not self._db.is_online:
                    continue
                try:
                    self._drain_once()
                except sqlite3.Error:
                    self._consecutive_failures += 1
                    self._logger.warning("Sync cycle aborted on local store error", exc_info=True)
                else:
                    self._consecutive_failures = 0
        except Exception:
            self._logger.error("Sync worker thread terminated", exc_info=True)

    def next_interval(self) -> float:
        """Seconds until the next cycle; doubles per failed cycle, capped."""
        base = self._config.SYNC_INTERVAL_S
        if self._consecutive_failures == 0:
            return base
        return min(base * 2 ** min(self._consecutive_failures, 6), self._config.SYNC_MAX_INTERVAL_S)

    def _drain_once(self) -> int:
        with self._db.write_lock:
            rows = self._db.sqlite.execute(
                """
                SELECT id, table_name, operation, entity_id, payload
                FROM sync_queue
                WHERE status = 'pending'
                ORDER BY id
                LIMIT ?
                """,
                (self._config.SYNC_BATCH_SIZE,),
            ).fetchall()

        blocked: set[tuple[str, str]] = set()
        synced = 0
        for row in rows:
            key = (row["table_name"], row["entity_id"])
            if key in blocked:
                continue
            if self._replay_row(row):
                synced += 1
            else:
                blocked.add(key)

        if rows:
            self._logger.info(
                "Sync cycle: %d of %d row(s) synced, %d entit(ies) held back",
                synced, len(rows), len(blocked),
            )
        return synced

    def _replay_row(self, row: sqlite3.Row) -> bool:
        queue_id: int = row["id"]
        try:
            payload: SyncPayload = json.loads(row["payload"])
        except (json.JSONDecodeError, TypeError) as exc:
            self._record_failure(queue_id, f"Malformed JSON: {exc}", permanent=True)
            return False

        table, operation = row["table_name"], row["operation"]
        handler = self._handlers.get(operation)
        try:
            if table not in SYNCABLE_TABLES:
                raise ValueError(f"Disallowed sync target table: {table}")
            if handler is None:
                raise ValueError(f"Unknown sync operation: {operation}")
            handler(table, row["entity_id"], payload)
        except Exception as exc:
            self._record_failure(queue_id, str(exc))
            return False

        with self._db.write_lock:
            self._db.sqlite.execute(
                "UPDATE sync_queue SET status = 'synced', attempted_at = CURRENT_TIMESTAMP WHERE id = ?",
                (queue_id,),
            )
            self._db.sqlite.commit()
        return True

    def _record_failure(self, queue_id: int, reason: str, permanent: bool = False) -> None:
        with self._db.write_lock:
            row = self._db.sqlite.execute(
                "SELECT error_message FROM sync_queue WHERE id = ?", (queue_id,),
            ).fetchone()
            attempt = attempts_recorded(row["error_message"] if row else None) + 1
            give_up = permanent or attempt >= self._config.SYNC_MAX_ATTEMPTS
            self._db.sqlite.execute(
                """
                UPDATE sync_queue
                SET status = ?, attempted_at = CURRENT_TIMESTAMP, error_message = ?
                WHERE id = ?
                """,
                ("permanently_failed" if give_up else "pending", f"Attempt {attempt}: {reason}", queue_id),
            )
            self._db.sqlite.commit()

        if give_up:
            self._logger.error("Sync row %d given up after %d attempt(s): %s", queue_id, attempt, reason)
        else:
            self._logger.warning("Sync row %d failed (attempt %d): %s", queue_id, attempt, reason)

    # ------------------------------------------------------------------
    # Replay handlers
    # ------------------------------------------------------------------

    def _replay_insert(self, table: str, entity_id: str, payload: SyncPayload) -> None:
        self._db.supabase.table(table).insert(payload).execute()

    def _replay_update(self, table: str, entity_id: str, payload: SyncPayload) -> None:
        self._db.supabase.table(table).update(payload).eq("id", entity_id).execute()

    def _replay_upsert(self, table: str, entity_id: str, payload: SyncPayload) -> None:
        # Rows already on the server win.
        self._db.supabase.table(table).upsert(payload, ignore_duplicates=True).execute()

    def _replay_delete(self, table: str, entity_id: str, payload: SyncPayload) -> None:
        self._db.supabase.table(table).delete().eq("id", entity_id).execute()

    def _replay_backfill(self, table: str, entity_id: str, payload: SyncPayload) -> None:
        """Point an account's unattributed rows at a profile.

        *entity_id* is the account id; rows that already carry a profile
        reference are left alone.
        """
        if not isinstance(payload, dict) or not payload.get("student_profile_id"):
            raise ValueError("Backfill payload needs a student_profile_id")
        (
            self._db.supabase.table(table)
            .update({"student_profile_id": payload["student_profile_id"]})
            .eq("user_id", entity_id)
            .is_("student_profile_id", "null")
            .execute()
        )
