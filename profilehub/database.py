"""
Database Abstraction Layer.

Dual-store connection holder for ProfileHub:

- **Supabase (cloud PostgreSQL)**: the authoritative store for accounts,
  profiles and scoped resources.  Optional: with no URL or key configured
  the process runs against the local store only.

- **SQLite (local)**: always present.  Mirrors the account/profile tables,
  buffers outbound writes in ``sync_queue``, persists the audit trail and
  holds per-installation settings such as the local active-profile
  pointer.

This module only manages the raw connections and transaction scopes; query
logic lives in the repositories.

Usage (dependency injection at startup)::

    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        sqlite_path=config.SQLITE_PATH,
        logger=StructuredLogger(name="profilehub.database"),
    )
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from supabase import Client as SupabaseClient
from supabase import create_client

from profilehub.logger import StructuredLogger


class DatabaseManager:
    """Owns the Supabase client (optional) and the SQLite connection.

    When ``supabase_url`` or ``supabase_key`` is empty the Supabase client
    is not created.  The :attr:`supabase` property then raises
    ``RuntimeError``, which every repository catches on its way to the
    SQLite path.

    Parameters
    ----------
    supabase_url:
        The Supabase project URL.  May be empty.
    supabase_key:
        Anonymous key for user-scoped access, or the service-role key for
        the elevated migration run.  May be empty.
    sqlite_path:
        Filesystem path for the local SQLite database file, or
        ``":memory:"``.
    logger:
        A ``StructuredLogger`` instance.
    """

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        sqlite_path: Path,
        logger: StructuredLogger,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._write_lock: threading.RLock = threading.RLock()
        self._batch_owner: Optional[int] = None

        self._supabase: Optional[SupabaseClient] = None
        if supabase_url and supabase_key:
            try:
                self._supabase = create_client(supabase_url, supabase_key)
                self._logger.info("Supabase client initialized.")
            except (ValueError, TypeError) as exc:
                self._logger.warning(
                    "Supabase credential format error: %s. Running local-only.",
                    exc,
                )
            except Exception as exc:
                self._logger.error(
                    "Unexpected Supabase initialization failure: %s. Running local-only.",
                    exc,
                    exc_info=True,
                )
        else:
            self._logger.warning(
                "Supabase credentials not configured, running local-only."
            )

        self._sqlite_conn: sqlite3.Connection = self._connect_sqlite(sqlite_path)

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def supabase(self) -> SupabaseClient:
        """Return the initialised Supabase client.

        Raises
        ------
        RuntimeError
            If no Supabase client is configured.
        """
        if self._supabase is None:
            raise RuntimeError(
                "Supabase client is not initialised. Running local-only."
            )
        return self._supabase

    @property
    def is_online(self) -> bool:
        """``True`` when the Supabase client is available."""
        return self._supabase is not None

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Return the SQLite connection."""
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Re-entrant lock serialising every SQLite write."""
        return self._write_lock

    @property
    def in_batch(self) -> bool:
        """``True`` when the calling thread owns an open :meth:`batch_write`.

        Repository ``_commit()`` calls become no-ops inside the batch.
        """
        return self._batch_owner == threading.get_ident()

    @contextmanager
    def batch_write(self) -> Generator[None, None, None]:
        """Run the enclosed SQLite writes as one atomic transaction.

        Holds :attr:`write_lock` for the whole block so no other thread
        can commit half of it.  Commits on normal exit, rolls back and
        re-raises on error.  Nested use joins the outer transaction.

        Example::

            with db.batch_write():
                profile_repo.insert(profile)
                resource_repo.backfill(...)
        """
        if self.in_batch:
            yield
            return

        with self._write_lock:
            self._batch_owner = threading.get_ident()
            try:
                # sqlite3 does not open a transaction implicitly for DDL.
                if not self._sqlite_conn.in_transaction:
                    self._sqlite_conn.execute("BEGIN")
                yield
                self._sqlite_conn.commit()
                self._logger.debug("Batch write committed.")
            except Exception:
                self._sqlite_conn.rollback()
                self._logger.warning("Batch write rolled back.", exc_info=True)
                raise
            finally:
                self._batch_owner = None

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def get_pending_sync_count(self) -> int:
        """Return the number of ``pending`` rows in ``sync_queue`` (0 on error)."""
        with self._write_lock:
            try:
                row = self._sqlite_conn.execute(
                    "SELECT COUNT(*) AS cnt FROM sync_queue WHERE status = 'pending'",
                ).fetchone()
                return int(row["cnt"]) if row else 0
            except sqlite3.Error:
                self._logger.debug(
                    "get_pending_sync_count query failed; returning 0.",
                    exc_info=True,
                )
                return 0

    def close(self) -> None:
        """Close the SQLite connection.  Safe to call more than once."""
        with self._write_lock:
            try:
                self._sqlite_conn.close()
                self._logger.info("SQLite connection closed.")
            except sqlite3.ProgrammingError:
                pass

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _connect_sqlite(self, path: Path) -> sqlite3.Connection:
        """Open (or create) the SQLite database.

        The connection is shared across threads (``check_same_thread`` off);
        writers serialise on :attr:`write_lock`.

        Raises
        ------
        PermissionError
            If the OS denies access to the database file or its directory.
        """
        try:
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys = ON;")
            self._logger.info("SQLite database opened at %s", path)
            return conn
        except PermissionError as exc:
            msg = (
                f"Cannot open the local database at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process."
            )
            self._logger.error(msg)
            raise PermissionError(msg) from exc
