"""
Account Repository.

Data access for the ``accounts`` table via Supabase (primary) and SQLite
(local mirror).  Accounts are never deleted here.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Callable, Optional

from profilehub.exceptions import NotFound
from profilehub.models.account import PREF_ACTIVE_PROFILE_ID, Account
from profilehub.models.enums import ProfileStorageVersion
from profilehub.repositories.base_repository import BaseRepository
from profilehub.utils.string_helpers import JsonValue

PreferencesMutator = Callable[[dict[str, JsonValue]], dict[str, JsonValue]]

_UPDATABLE_COLUMNS: frozenset[str] = frozenset({
    "email",
    "full_name",
    "onboarding_completed",
    "preferences",
    "profile_storage_version",
})


class AccountRepository(BaseRepository):
    """Data access layer for Account entities."""

    TABLE = "accounts"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, account_id: str) -> Optional[Account]:
        """Fetch an account by primary key. Tries Supabase first, falls back to SQLite."""
        def _supabase() -> Optional[Account]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("id", account_id)
                .maybe_single()
                .execute()
            )
            return Account(**response.data) if response and response.data else None

        def _sqlite() -> Optional[Account]:
            row = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE id = ?", (account_id,)
            ).fetchone()
            return Account(**dict(row)) if row else None

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=lambda: None,
            operation_name="get_by_id (accounts)",
            on_supabase_success=self._cache_to_sqlite,
        )

    def list_ids(self) -> list[str]:
        """Return every account id, oldest first."""
        def _supabase() -> list[str]:
            response = (
                self.supabase.table(self.TABLE)
                .select("id")
                .order("created_at")
                .execute()
            )
            return [row["id"] for row in response.data]

        def _sqlite() -> list[str]:
            rows = self.sqlite.execute(
                f"SELECT id FROM {self.TABLE} ORDER BY created_at, id"
            ).fetchall()
            return [row["id"] for row in rows]

        return self._execute_with_fallback(
            supabase_op=_supabase,
            sqlite_op=_sqlite,
            default_factory=list,
            operation_name="list_ids (accounts)",
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, account: Account) -> Account:
        """Create the account row.

        Raises ``sqlite3.IntegrityError`` if the id already exists locally.
        """
        now = datetime.now(timezone.utc)
        account = account.model_copy(
            update={
                "created_at": account.created_at or now,
                "updated_at": account.updated_at or now,
            }
        )
        row = self._to_row(account)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)

        def _sqlite() -> None:
            self.sqlite.execute(
                f"INSERT INTO {self.TABLE} ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )

        def _supabase() -> None:
            self.supabase.table(self.TABLE).insert(account.model_dump(mode="json")).execute()

        self._write_through("insert", account.id, account.model_dump(mode="json"), _sqlite, _supabase)
        self._logger.info("Account inserted: %s", account.id)
        return account

    def update_fields(self, account_id: str, fields: dict[str, JsonValue]) -> Optional[Account]:
        """Update whitelisted columns and return the refreshed account.

        Raises:
            ValueError: If *fields* names a column outside the whitelist
                (``role`` and ``credits_remaining`` are never writable here).
        """
        illegal = set(fields) - _UPDATABLE_COLUMNS
        if illegal:
            raise ValueError(f"Columns not updatable: {sorted(illegal)}")
        if not fields:
            return self.get_by_id(account_id)

        payload: dict[str, JsonValue] = dict(fields)
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()
        sqlite_values = {
            key: json.dumps(value) if key == "preferences" else value
            for key, value in payload.items()
        }
        assignments = ", ".join(f"{key} = ?" for key in sqlite_values)

        def _sqlite() -> None:
            self.sqlite.execute(
                f"UPDATE {self.TABLE} SET {assignments} WHERE id = ?",
                (*sqlite_values.values(), account_id),
            )

        def _supabase() -> None:
            self.supabase.table(self.TABLE).update(payload).eq("id", account_id).execute()

        self._write_through("update", account_id, payload, _sqlite, _supabase)
        return self.get_by_id(account_id)

    def update_preferences(self, account_id: str, mutate: PreferencesMutator) -> Account:
        """Read-modify-write the preferences blob under the write lock.

        *mutate* receives a copy of the current blob and returns the new
        one; keys it does not touch are preserved.

        Raises:
            NotFound: If the account does not exist.
        """
        with self._db.write_lock:
            account = self.get_by_id(account_id)
            if account is None:
                raise NotFound(f"Account {account_id} not found")
            new_preferences = mutate(dict(account.preferences))
            updated = self.update_fields(account_id, {"preferences": new_preferences})
        return updated or account.model_copy(update={"preferences": new_preferences})

    def set_server_active_profile(self, account_id: str, profile_id: Optional[str]) -> Account:
        """Persist ``preferences.activeProfileId`` (last writer wins)."""
        def _mutate(prefs: dict[str, JsonValue]) -> dict[str, JsonValue]:
            if profile_id is None:
                prefs.pop(PREF_ACTIVE_PROFILE_ID, None)
            else:
                prefs[PREF_ACTIVE_PROFILE_ID] = profile_id
            return prefs

        return self.update_preferences(account_id, _mutate)

    def set_storage_version(self, account_id: str, version: ProfileStorageVersion) -> None:
        self.update_fields(account_id, {"profile_storage_version": int(version)})

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_row(account: Account) -> dict[str, object]:
        data = account.model_dump(mode="json")
        data["preferences"] = json.dumps(account.preferences)
        data["onboarding_completed"] = int(account.onboarding_completed)
        data["profile_storage_version"] = int(account.profile_storage_version)
        return data

    def _cache_to_sqlite(self, account: Account) -> None:
        """Mirror a Supabase account into the local table."""
        row = self._to_row(account)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        updates = ", ".join(f"{key} = excluded.{key}" for key in row if key != "id")
        with self._db.write_lock:
            if self._has_pending_sync(account.id):
                self._logger.debug("Kept local account %s: write pending sync", account.id)
                return
            self.sqlite.execute(
                f"INSERT INTO {self.TABLE} ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                tuple(row.values()),
            )
            self._commit()
