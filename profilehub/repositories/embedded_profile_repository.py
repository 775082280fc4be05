"""
Embedded Profile Repository.

Legacy representation: profiles stored as a list under
``accounts.preferences.studentProfiles``.  Every write is a
read-modify-write of the blob through ``AccountRepository``, so keys the
profile code does not know about (in the blob and in each entry) survive.
"""

from __future__ import annotations

from typing import Optional

from profilehub.database import DatabaseManager
from profilehub.exceptions import NotFound
from profilehub.logger import StructuredLogger
from profilehub.models.account import PREF_STUDENT_PROFILES, Account
from profilehub.models.profile import Profile, utcnow
from profilehub.repositories.account_repository import AccountRepository
from profilehub.repositories.base_repository import BaseRepository
from profilehub.repositories.profile_repository import ProfileRepository
from profilehub.utils.string_helpers import JsonValue


class EmbeddedProfileRepository(BaseRepository, ProfileRepository):
    """Profiles inside the account preferences blob."""

    TABLE = "accounts"

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        account_repo: AccountRepository,
    ) -> None:
        super().__init__(db, logger)
        self._account_repo = account_repo

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def parse_entries(self, account: Account) -> list[Profile]:
        """Decode every well-formed entry of the blob (active or not)."""
        raw = account.preferences.get(PREF_STUDENT_PROFILES)
        if not isinstance(raw, list):
            return []

        fallback_ts = account.created_at or utcnow()
        profiles: list[Profile] = []
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get("id"):
                self._logger.warning(
                    "Skipping malformed embedded profile entry for account %s", account.id,
                )
                continue
            try:
                profiles.append(Profile.from_embedded(entry, account.id, fallback_ts))
            except ValueError as exc:
                self._logger.warning(
                    "Skipping invalid embedded profile %s for account %s: %s",
                    entry.get("id"),
                    account.id,
                    exc,
                )
        return profiles

    def get(self, account: Account, profile_id: str) -> Optional[Profile]:
        current = self._reload(account)
        for profile in self.parse_entries(current):
            if profile.id == profile_id:
                return profile
        return None

    def list_for_account(self, account: Account, include_inactive: bool = False) -> list[Profile]:
        profiles = self.parse_entries(self._reload(account))
        if include_inactive:
            return profiles
        return [p for p in profiles if p.is_active]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, account: Account, profile: Profile) -> Profile:
        def _mutate(prefs: dict[str, JsonValue]) -> dict[str, JsonValue]:
            entries = prefs.get(PREF_STUDENT_PROFILES)
            entries = list(entries) if isinstance(entries, list) else []
            entries.append(profile.to_embedded())
            prefs[PREF_STUDENT_PROFILES] = entries
            return prefs

        self._account_repo.update_preferences(account.id, _mutate)
        return profile

    def update(self, account: Account, profile: Profile) -> Profile:
        def _mutate(prefs: dict[str, JsonValue]) -> dict[str, JsonValue]:
            entries = prefs.get(PREF_STUDENT_PROFILES)
            entries = list(entries) if isinstance(entries, list) else []
            for index, entry in enumerate(entries):
                if isinstance(entry, dict) and entry.get("id") == profile.id:
                    merged = dict(entry)
                    merged.update(profile.to_embedded())
                    entries[index] = merged
                    break
            else:
                raise NotFound(f"Embedded profile {profile.id} not found")
            prefs[PREF_STUDENT_PROFILES] = entries
            return prefs

        self._account_repo.update_preferences(account.id, _mutate)
        return profile

    def _reload(self, account: Account) -> Account:
        return self._account_repo.get_by_id(account.id) or account
