"""
Local Settings Service.

Read/write access to the ``app_settings`` key-value table in the local
SQLite database.  Holds per-installation state that never leaves the
machine: the active-profile pointer of each account signed in here, and
a generated installation id.

This is the one service that talks to SQLite without a repository,
because ``app_settings`` stores installation state rather than domain
data.

The ``app_settings`` table::

    CREATE TABLE IF NOT EXISTS app_settings (
        key        TEXT PRIMARY KEY,
        value      TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

from __future__ import annotations

import uuid
from typing import Optional

from profilehub.database import DatabaseManager
from profilehub.logger import StructuredLogger

_KEY_INSTALLATION_ID: str = "installation_id"
_KEY_ACTIVE_PROFILE_PREFIX: str = "active_profile_id:"


class LocalSettingsService:
    """Manages persistent installation settings in local SQLite.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager`` with active SQLite connection.
    logger:
        Structured logger instance.
    """

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    # ------------------------------------------------------------------
    # Generic key-value access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        """Read a setting by key.  ``None`` if missing or unreadable."""
        try:
            row = self._db.sqlite.execute(
                "SELECT value FROM app_settings WHERE key = ?",
                (key,),
            ).fetchone()
            return row["value"] if row is not None else None
        except Exception as exc:
            self._logger.warning("Failed to read app_settings[%s]: %s", key, exc)
            return None

    def set(self, key: str, value: str) -> bool:
        """Upsert a setting.  Returns ``True`` on success."""
        try:
            with self._db.write_lock:
                self._db.sqlite.execute(
                    """
                    INSERT INTO app_settings (key, value)
                    VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value      = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )
                if not self._db.in_batch:
                    self._db.sqlite.commit()
            self._logger.debug("app_settings[%s] updated.", key)
            return True
        except Exception as exc:
            self._logger.error("Failed to write app_settings[%s]: %s", key, exc)
            return False

    def delete(self, key: str) -> bool:
        try:
            with self._db.write_lock:
                self._db.sqlite.execute("DELETE FROM app_settings WHERE key = ?", (key,))
                if not self._db.in_batch:
                    self._db.sqlite.commit()
            return True
        except Exception as exc:
            self._logger.error("Failed to delete app_settings[%s]: %s", key, exc)
            return False

    # ------------------------------------------------------------------
    # Active profile pointer (one per account on this installation)
    # ------------------------------------------------------------------

    def get_active_profile_id(self, account_id: str) -> Optional[str]:
        return self.get(_KEY_ACTIVE_PROFILE_PREFIX + account_id) or None

    def set_active_profile_id(self, account_id: str, profile_id: str) -> bool:
        return self.set(_KEY_ACTIVE_PROFILE_PREFIX + account_id, profile_id)

    def clear_active_profile_id(self, account_id: str) -> bool:
        return self.delete(_KEY_ACTIVE_PROFILE_PREFIX + account_id)

    # ------------------------------------------------------------------
    # Installation id
    # ------------------------------------------------------------------

    def get_installation_id(self) -> str:
        """Return this installation's id, generating it on first use."""
        with self._db.write_lock:
            current = self.get(_KEY_INSTALLATION_ID)
            if current:
                return current
            generated = str(uuid.uuid4())
            self.set(_KEY_INSTALLATION_ID, generated)
        self._logger.info("Installation id generated: %s", generated)
        return generated
