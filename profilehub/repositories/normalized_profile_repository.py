"""
Normalized Profile Repository.

Profiles as rows of ``student_profiles`` via Supabase (primary) and
SQLite (local mirror).  Deletion is soft: ``is_active = 0``.
"""

from __future__ import annotations

import json
from typing import Optional

from profilehub.models.account import Account
from profilehub.models.profile import Profile
from profilehub.repositories.base_repository import BaseRepository
from profilehub.repositories.profile_repository import ProfileRepository


class NormalizedProfileRepository(BaseRepository, ProfileRepository):
    """Data access layer for the ``student_profiles`` table."""

    TABLE = "student_profiles"

    def get(self, account: Account, profile_id: str) -> Optional[Profile]:
        def _supabase() -> Optional[Profile]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("id", profile_id)
                .eq("account_id", account.id)
                .maybe_single()
                .execute()
            )
            return Profile(**response.data) if response and response.data else None

        def _sqlite() -> Optional[Profile]:
            row = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE id = ? AND account_id = ?",
                (profile_id, account.id),
            ).fetchone()
            return Profile(**dict(row)) if row else None

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=lambda: None,
            operation_name="get (student_profiles)",
            on_supabase_success=self._cache_to_sqlite,
        )

    def list_for_account(self, account: Account, include_inactive: bool = False) -> list[Profile]:
        def _supabase() -> list[Profile]:
            query = self.supabase.table(self.TABLE).select("*").eq("account_id", account.id)
            if not include_inactive:
                query = query.eq("is_active", True)
            response = query.order("created_at").execute()
            return [Profile(**row) for row in response.data]

        def _sqlite() -> list[Profile]:
            sql = f"SELECT * FROM {self.TABLE} WHERE account_id = ?"
            if not include_inactive:
                sql += " AND is_active = 1"
            rows = self.sqlite.execute(sql + " ORDER BY created_at, id", (account.id,)).fetchall()
            return [Profile(**dict(row)) for row in rows]

        def _cache_all(profiles: list[Profile]) -> None:
            for profile in profiles:
                self._cache_to_sqlite(profile)

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=list,
            operation_name="list_for_account (student_profiles)",
            on_supabase_success=_cache_all,
        )

    def count_active(self, account: Account) -> int:
        def _supabase() -> int:
            response = (
                self.supabase.table(self.TABLE)
                .select("id", count="exact")
                .eq("account_id", account.id)
                .eq("is_active", True)
                .execute()
            )
            return int(response.count or 0)

        def _sqlite() -> int:
            row = self.sqlite.execute(
                f"SELECT COUNT(*) AS cnt FROM {self.TABLE} WHERE account_id = ? AND is_active = 1",
                (account.id,),
            ).fetchone()
            return int(row["cnt"])

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=lambda: 0,
            operation_name="count_active (student_profiles)",
        )

    def insert(self, account: Account, profile: Profile) -> Profile:
        """Insert a profile row.

        Raises ``sqlite3.IntegrityError`` when the active-name unique index
        or the account foreign key rejects the row.
        """
        row = self._to_row(profile)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        payload = profile.model_dump(mode="json")

        def _sqlite() -> None:
            self.sqlite.execute(
                f"INSERT INTO {self.TABLE} ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )

        def _supabase() -> None:
            self.supabase.table(self.TABLE).insert(payload).execute()

        self._write_through("insert", profile.id, payload, _sqlite, _supabase)
        return profile

    def promote(self, profile: Profile) -> bool:
        """Insert an embedded profile keeping its id; no-op if the id exists.

        Returns ``True`` when a row was inserted.  Migration use only.
        """
        row = self._to_row(profile)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        payload = profile.model_dump(mode="json")
        inserted = False

        def _sqlite() -> None:
            nonlocal inserted
            cursor = self.sqlite.execute(
                f"INSERT OR IGNORE INTO {self.TABLE} ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
            inserted = cursor.rowcount == 1

        def _supabase() -> None:
            self.supabase.table(self.TABLE).upsert(payload, ignore_duplicates=True).execute()

        self._write_through("upsert", profile.id, payload, _sqlite, _supabase)
        return inserted

    def update(self, account: Account, profile: Profile) -> Profile:
        payload = {
            "profile_name": profile.profile_name,
            "profile_color": profile.profile_color,
            "preferences": profile.preferences,
            "updated_at": profile.updated_at.isoformat(),
            "last_accessed_at": (
                profile.last_accessed_at.isoformat() if profile.last_accessed_at else None
            ),
            "is_active": profile.is_active,
        }

        def _sqlite() -> None:
            self.sqlite.execute(
                f"""
                UPDATE {self.TABLE}
                SET profile_name = ?, profile_color = ?, preferences = ?,
                    updated_at = ?, last_accessed_at = ?, is_active = ?
                WHERE id = ? AND account_id = ?
                """,
                (
                    payload["profile_name"],
                    payload["profile_color"],
                    json.dumps(profile.preferences),
                    payload["updated_at"],
                    payload["last_accessed_at"],
                    int(profile.is_active),
                    profile.id,
                    account.id,
                ),
            )

        def _supabase() -> None:
            (
                self.supabase.table(self.TABLE)
                .update(payload)
                .eq("id", profile.id)
                .eq("account_id", account.id)
                .execute()
            )

        self._write_through("update", profile.id, payload, _sqlite, _supabase)
        return profile

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_row(profile: Profile) -> dict[str, object]:
        data = profile.model_dump(mode="json")
        data["preferences"] = json.dumps(profile.preferences)
        data["is_active"] = int(profile.is_active)
        return data

    def _cache_to_sqlite(self, profile: Profile) -> None:
        row = self._to_row(profile)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        updates = ", ".join(f"{key} = excluded.{key}" for key in row if key != "id")
        with self._db.write_lock:
            if self._has_pending_sync(profile.id):
                self._logger.debug("Kept local profile %s: write pending sync", profile.id)
                return
            self.sqlite.execute(
                f"INSERT INTO {self.TABLE} ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                tuple(row.values()),
            )
            self._commit()
