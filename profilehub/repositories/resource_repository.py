"""
Scoped Resource Repository.

Raw data access for one scoped resource table (``documents``,
``notifications``, ...).  No ownership checks happen here: callers go
through ``ScopedResourceService``, which evaluates the ownership policy
first.  The migration uses the backfill and constraint helpers directly.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

from profilehub.database import DatabaseManager
from profilehub.logger import StructuredLogger
from profilehub.models.resource import ScopedResource, resource_from_row
from profilehub.repositories.base_repository import BaseRepository
from profilehub.schema import RESOURCE_TABLES, column_is_not_null, rebuild_resource_table
from profilehub.utils.string_helpers import JsonValue


class ResourceRepository(BaseRepository):
    """Data access for a single scoped resource table."""

    def __init__(self, db: DatabaseManager, logger: StructuredLogger, table: str) -> None:
        if table not in RESOURCE_TABLES:
            raise ValueError(f"Not a scoped resource table: {table!r}")
        super().__init__(db, logger)
        self.TABLE = table

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, resource_id: str) -> Optional[ScopedResource]:
        def _supabase() -> Optional[ScopedResource]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("id", resource_id)
                .maybe_single()
                .execute()
            )
            return resource_from_row(self.TABLE, response.data) if response and response.data else None

        def _sqlite() -> Optional[ScopedResource]:
            row = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE id = ?", (resource_id,)
            ).fetchone()
            return resource_from_row(self.TABLE, dict(row)) if row else None

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=lambda: None,
            operation_name=f"get ({self.TABLE})",
        )

    def list_by_profile(self, profile_id: str) -> list[ScopedResource]:
        def _supabase() -> list[ScopedResource]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("student_profile_id", profile_id)
                .order("created_at")
                .execute()
            )
            return [resource_from_row(self.TABLE, row) for row in response.data]

        def _sqlite() -> list[ScopedResource]:
            rows = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE student_profile_id = ? ORDER BY created_at, id",
                (profile_id,),
            ).fetchall()
            return [resource_from_row(self.TABLE, dict(row)) for row in rows]

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=list,
            operation_name=f"list_by_profile ({self.TABLE})",
        )

    def list_legacy_for_account(self, account_id: str) -> list[ScopedResource]:
        """Rows without a profile reference whose ``user_id`` is *account_id*."""
        rows = self.sqlite.execute(
            f"SELECT * FROM {self.TABLE} "
            "WHERE student_profile_id IS NULL AND user_id = ? ORDER BY created_at, id",
            (account_id,),
        ).fetchall()
        return [resource_from_row(self.TABLE, dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(
        self,
        resource_id: str,
        account_id: str,
        profile_id: str,
        payload: dict[str, JsonValue],
    ) -> ScopedResource:
        now = datetime.now(timezone.utc).isoformat()
        row: dict[str, JsonValue] = {
            "id": resource_id,
            "user_id": account_id,
            "student_profile_id": profile_id,
            "payload": payload,
            "created_at": now,
            "updated_at": now,
        }

        def _sqlite() -> None:
            self.sqlite.execute(
                f"""
                INSERT INTO {self.TABLE}
                    (id, user_id, student_profile_id, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (resource_id, account_id, profile_id, json.dumps(payload), now, now),
            )

        def _supabase() -> None:
            self.supabase.table(self.TABLE).insert(row).execute()

        self._write_through("insert", resource_id, row, _sqlite, _supabase)
        return resource_from_row(self.TABLE, row)

    def update_payload(self, resource_id: str, payload: dict[str, JsonValue]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        change: dict[str, JsonValue] = {"payload": payload, "updated_at": now}

        def _sqlite() -> None:
            self.sqlite.execute(
                f"UPDATE {self.TABLE} SET payload = ?, updated_at = ? WHERE id = ?",
                (json.dumps(payload), now, resource_id),
            )

        def _supabase() -> None:
            self.supabase.table(self.TABLE).update(change).eq("id", resource_id).execute()

        self._write_through("update", resource_id, change, _sqlite, _supabase)

    def delete(self, resource_id: str) -> None:
        def _sqlite() -> None:
            self.sqlite.execute(f"DELETE FROM {self.TABLE} WHERE id = ?", (resource_id,))

        def _supabase() -> None:
            self.supabase.table(self.TABLE).delete().eq("id", resource_id).execute()

        self._write_through("delete", resource_id, {"id": resource_id}, _sqlite, _supabase)

    # ------------------------------------------------------------------
    # Migration helpers (elevated, no ownership checks)
    # ------------------------------------------------------------------

    def backfill(self, account_id: str, profile_id: str) -> int:
        """Point every unattributed row of *account_id* at *profile_id*.

        Returns the number of rows updated.  Rows that already carry a
        profile reference are untouched.
        """
        updated = 0
        change: dict[str, JsonValue] = {"user_id": account_id, "student_profile_id": profile_id}

        def _sqlite() -> None:
            nonlocal updated
            cursor = self.sqlite.execute(
                f"UPDATE {self.TABLE} SET student_profile_id = ? "
                "WHERE user_id = ? AND student_profile_id IS NULL",
                (profile_id, account_id),
            )
            updated = cursor.rowcount

        def _supabase() -> None:
            (
                self.supabase.table(self.TABLE)
                .update({"student_profile_id": profile_id})
                .eq("user_id", account_id)
                .is_("student_profile_id", "null")
                .execute()
            )

        self._write_through("backfill", account_id, change, _sqlite, _supabase)
        return updated

    def count_null_refs(self) -> int:
        row = self.sqlite.execute(
            f"SELECT COUNT(*) AS cnt FROM {self.TABLE} WHERE student_profile_id IS NULL"
        ).fetchone()
        return int(row["cnt"])

    def count_orphan_refs(self) -> int:
        """Rows whose profile reference points at no ``student_profiles`` row."""
        row = self.sqlite.execute(
            f"""
            SELECT COUNT(*) AS cnt FROM {self.TABLE} r
            WHERE r.student_profile_id IS NOT NULL
              AND NOT EXISTS (SELECT 1 FROM student_profiles p WHERE p.id = r.student_profile_id)
            """
        ).fetchone()
        return int(row["cnt"])

    def has_not_null_constraint(self) -> bool:
        return column_is_not_null(self.sqlite, self.TABLE, "student_profile_id")

    def apply_profile_constraint(self) -> None:
        """Rebuild the table with NOT NULL + FOREIGN KEY.  Caller owns the transaction."""
        rebuild_resource_table(self.sqlite, self.TABLE)
