"""
Profile Repository Interface and Representation Router.

Profiles live in one of two places depending on the account's
``profile_storage_version`` marker:

- ``student_profiles`` table (:class:`NormalizedProfileRepository`)
- ``accounts.preferences.studentProfiles`` (:class:`EmbeddedProfileRepository`)

Callers go through :class:`ProfileRepositoryRouter`, which picks the
authoritative representation per account, so services never branch on it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from profilehub.models.account import Account
from profilehub.models.enums import ProfileStorageVersion
from profilehub.models.profile import Profile


class ProfileRepository(ABC):
    """Storage contract shared by both profile representations."""

    @abstractmethod
    def get(self, account: Account, profile_id: str) -> Optional[Profile]:
        """Return the profile if it belongs to *account* (active or not)."""

    @abstractmethod
    def list_for_account(self, account: Account, include_inactive: bool = False) -> list[Profile]:
        """Return the account's profiles, active ones only by default."""

    @abstractmethod
    def insert(self, account: Account, profile: Profile) -> Profile:
        """Persist a new profile."""

    @abstractmethod
    def update(self, account: Account, profile: Profile) -> Profile:
        """Persist the mutable fields of an existing profile.

        ``account_id`` and ``created_at`` are never rewritten.
        """

    def count_active(self, account: Account) -> int:
        return len(self.list_for_account(account))


class ProfileRepositoryRouter(ProfileRepository):
    """Dispatches every call to the representation the account is on."""

    def __init__(
        self,
        normalized: ProfileRepository,
        embedded: ProfileRepository,
    ) -> None:
        self._normalized = normalized
        self._embedded = embedded

    def for_account(self, account: Account) -> ProfileRepository:
        if account.profile_storage_version == ProfileStorageVersion.EMBEDDED:
            return self._embedded
        return self._normalized

    def get(self, account: Account, profile_id: str) -> Optional[Profile]:
        return self.for_account(account).get(account, profile_id)

    def list_for_account(self, account: Account, include_inactive: bool = False) -> list[Profile]:
        return self.for_account(account).list_for_account(account, include_inactive)

    def insert(self, account: Account, profile: Profile) -> Profile:
        return self.for_account(account).insert(account, profile)

    def update(self, account: Account, profile: Profile) -> Profile:
        return self.for_account(account).update(account, profile)

    def count_active(self, account: Account) -> int:
        return self.for_account(account).count_active(account)
