"""
Profile Reference Constraint Ledger.

``profile_ref_constraints`` lists the resource tables whose
``student_profile_id`` has been tightened.  A table in the ledger no
longer admits legacy account-only rows, which closes the legacy access
path of the ownership policy for that table.  Local to this installation.
"""

from __future__ import annotations

from profilehub.repositories.base_repository import BaseRepository


class ConstraintRepository(BaseRepository):
    """Reads and writes the tightened-table ledger."""

    TABLE = "profile_ref_constraints"

    def is_tightened(self, table: str) -> bool:
        row = self.sqlite.execute(
            f"SELECT 1 FROM {self.TABLE} WHERE table_name = ?", (table,)
        ).fetchone()
        return row is not None

    def tightened_tables(self) -> set[str]:
        rows = self.sqlite.execute(f"SELECT table_name FROM {self.TABLE}").fetchall()
        return {row["table_name"] for row in rows}

    def mark_tightened(self, table: str) -> None:
        with self._db.write_lock:
            self.sqlite.execute(
                f"INSERT OR IGNORE INTO {self.TABLE} (table_name) VALUES (?)", (table,)
            )
            self._commit()
        self._logger.info("Profile reference constraint recorded for %s", table)
