"""
Profile Lifecycle Service.

Create, rename/recolor, soft-delete and switch profiles inside an account.

Rules enforced here:
    - Names are trimmed, 1..``PROFILE_NAME_MAX_LENGTH`` characters, free of
      control characters, and unique (case-insensitively) among the
      account's active profiles.
    - At most ``MAX_ACTIVE_PROFILES`` active profiles per account.
    - The last active profile cannot be deleted.
    - ``last_accessed_at`` never moves backwards.

Every mutation of an existing profile is preceded by an ownership check.
The count-then-insert and count-then-delete sequences run under the
database write lock so concurrent calls in this process cannot overshoot
the limits.
"""

from __future__ import annotations

import re
import sqlite3
import uuid
from datetime import datetime
from typing import Callable, Optional, Union

from pydantic import ValidationError

from profilehub.config import AppConfig
from profilehub.database import DatabaseManager
from profilehub.exceptions import NotFound, ValidationFailed
from profilehub.logger import StructuredLogger
from profilehub.models.account import Account
from profilehub.models.profile import Profile, ProfilePatch, order_by_recency, utcnow
from profilehub.repositories.account_repository import AccountRepository
from profilehub.repositories.profile_repository import ProfileRepositoryRouter
from profilehub.services.base_service import BaseService
from profilehub.services.ownership_policy import OwnershipPolicy
from profilehub.utils.string_helpers import (
    JsonValue,
    has_control_chars,
    name_key,
    normalize_profile_name,
)

_RE_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")

Clock = Callable[[], datetime]


class ProfileLifecycleService(BaseService):
    """Mutations of an account's profile set."""

    def __init__(
        self,
        account_repo: AccountRepository,
        profile_repo: ProfileRepositoryRouter,
        policy: OwnershipPolicy,
        db: DatabaseManager,
        config: AppConfig,
        logger: StructuredLogger,
        clock: Clock = utcnow,
    ) -> None:
        super().__init__(logger, db)
        self._account_repo = account_repo
        self._profile_repo = profile_repo
        self._policy = policy
        self._db = db
        self._config = config
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_profiles(self, account_id: str) -> list[Profile]:
        """Active profiles, most recently accessed first."""
        account = self._require_account(account_id)
        return order_by_recency(self._profile_repo.list_for_account(account))

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, account_id: str, name: str, color: Optional[str] = None) -> Profile:
        """Create a new active profile.

        Args:
            account_id: Owning account.
            name: Display name; surrounding whitespace is stripped.
            color: ``#rrggbb``.  Defaults to the first palette color no
                active profile uses.

        Returns:
            The stored profile, with ``last_accessed_at`` unset.

        Raises:
            NotFound: Unknown account.
            ValidationFailed: Bad name or color, duplicate name, or the
                account already has the maximum number of profiles.
        """
        account = self._require_account(account_id)
        cleaned = self._validate_name(name)
        if color is not None:
            self._validate_color(color)

        with self._db.write_lock:
            active = self._profile_repo.list_for_account(account)
            if len(active) >= self._config.MAX_ACTIVE_PROFILES:
                raise ValidationFailed(
                    f"An account can have at most {self._config.MAX_ACTIVE_PROFILES} profiles"
                )
            self._ensure_unique_name(cleaned, active)

            now = self._clock()
            profile = Profile(
                id=str(uuid.uuid4()),
                account_id=account.id,
                profile_name=cleaned,
                profile_color=color or self._pick_color(active),
                preferences={},
                created_at=now,
                updated_at=now,
                last_accessed_at=None,
                is_active=True,
            )
            try:
                stored = self._profile_repo.insert(account, profile)
            except sqlite3.IntegrityError as exc:
                raise ValidationFailed(
                    f"A profile named '{cleaned}' already exists", original_error=exc,
                )

        self._logger.info("Profile %s created for account %s", stored.id, account.id)
        self._audit(
            "PROFILE_CREATE",
            "Profile",
            stored.id,
            account.id,
            {"profile_name": stored.profile_name, "profile_color": stored.profile_color},
        )
        return stored

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(
        self,
        account_id: str,
        profile_id: str,
        patch: Union[ProfilePatch, dict[str, JsonValue]],
    ) -> Profile:
        """Apply a rename / recolor / preferences patch.

        Raises:
            ValidationFailed: Unknown patch fields or invalid values.
            OwnershipDenied: The caller does not own an active profile
                with that id.
        """
        patch = self._coerce_patch(patch)
        profile = self._policy.require_owner(account_id, profile_id)
        account = self._require_account(account_id)
        if patch.is_empty():
            return profile

        changes: dict[str, object] = {}
        with self._db.write_lock:
            if "profile_name" in patch.model_fields_set:
                if patch.profile_name is None:
                    raise ValidationFailed("Profile name is required")
                cleaned = self._validate_name(patch.profile_name)
                others = [
                    p for p in self._profile_repo.list_for_account(account) if p.id != profile.id
                ]
                self._ensure_unique_name(cleaned, others)
                changes["profile_name"] = cleaned
            if "profile_color" in patch.model_fields_set:
                if patch.profile_color is None:
                    raise ValidationFailed("Profile color is required")
                self._validate_color(patch.profile_color)
                changes["profile_color"] = patch.profile_color
            if "preferences" in patch.model_fields_set:
                changes["preferences"] = patch.preferences or {}

            changes["updated_at"] = max(self._clock(), profile.updated_at)
            updated = profile.model_copy(update=changes)
            try:
                self._profile_repo.update(account, updated)
            except sqlite3.IntegrityError as exc:
                raise ValidationFailed(
                    f"A profile named '{updated.profile_name}' already exists",
                    original_error=exc,
                )

        self._audit(
            "PROFILE_UPDATE",
            "Profile",
            profile.id,
            account_id,
            {"fields": ",".join(sorted(k for k in changes if k != "updated_at"))},
        )
        return updated

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(self, account_id: str, profile_id: str) -> None:
        """Soft-delete a profile.

        If the account's server-side active pointer referenced it, the
        pointer moves to the most recently accessed remaining profile.

        Raises:
            OwnershipDenied: The caller does not own an active profile
                with that id.
            ValidationFailed: It is the account's only active profile.
        """
        profile = self._policy.require_owner(account_id, profile_id)
        account = self._require_account(account_id)

        with self._db.write_lock:
            active = self._profile_repo.list_for_account(account)
            if len(active) <= 1:
                raise ValidationFailed("Cannot delete the last remaining profile")

            now = max(self._clock(), profile.updated_at)
            self._profile_repo.update(
                account, profile.model_copy(update={"is_active": False, "updated_at": now}),
            )

            if account.server_active_profile_id == profile.id:
                remaining = order_by_recency([p for p in active if p.id != profile.id])
                self._account_repo.set_server_active_profile(account.id, remaining[0].id)

        self._logger.info("Profile %s deleted for account %s", profile.id, account_id)
        self._audit("PROFILE_DELETE", "Profile", profile.id, account_id)

    # ------------------------------------------------------------------
    # Switch
    # ------------------------------------------------------------------

    def switch_active(self, account_id: str, profile_id: str) -> Profile:
        """Mark a profile as just accessed and return it.

        ``last_accessed_at`` becomes ``max(now, previous)``.  Calling it
        again for the same profile is harmless.

        Raises:
            OwnershipDenied: The caller does not own an active profile
                with that id.
        """
        profile = self._policy.require_owner(account_id, profile_id)
        account = self._require_account(account_id)

        now = self._clock()
        previous = profile.last_accessed_at
        stamped = now if previous is None else max(now, previous)
        if previous is not None and stamped == previous:
            return profile

        updated = profile.model_copy(update={"last_accessed_at": stamped})
        with self._db.write_lock:
            self._profile_repo.update(account, updated)
        self._logger.info("Profile %s switched to for account %s", profile.id, account_id)
        return updated

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require_account(self, account_id: str) -> Account:
        account = self._account_repo.get_by_id(account_id) if account_id else None
        if account is None:
            raise NotFound(f"Account {account_id} not found")
        return account

    def _validate_name(self, name: object) -> str:
        if not isinstance(name, str):
            raise ValidationFailed("Profile name must be a string")
        cleaned = normalize_profile_name(name)
        if not cleaned:
            raise ValidationFailed("Profile name is required")
        if len(cleaned) > self._config.PROFILE_NAME_MAX_LENGTH:
            raise ValidationFailed(
                f"Profile name must be at most {self._config.PROFILE_NAME_MAX_LENGTH} characters"
            )
        if has_control_chars(cleaned):
            raise ValidationFailed("Profile name contains control characters")
        return cleaned

    @staticmethod
    def _validate_color(color: str) -> None:
        if not isinstance(color, str) or not _RE_HEX_COLOR.match(color):
            raise ValidationFailed(f"Invalid profile color {color!r}; expected #rrggbb")

    @staticmethod
    def _ensure_unique_name(cleaned: str, existing: list[Profile]) -> None:
        key = name_key(cleaned)
        if any(name_key(p.profile_name) == key for p in existing):
            raise ValidationFailed(f"A profile named '{cleaned}' already exists")

    def _pick_color(self, active: list[Profile]) -> str:
        used = {p.profile_color.lower() for p in active}
        for color in self._config.PROFILE_COLORS:
            if color.lower() not in used:
                return color
        return self._config.DEFAULT_PROFILE_COLOR

    @staticmethod
    def _coerce_patch(patch: Union[ProfilePatch, dict[str, JsonValue]]) -> ProfilePatch:
        if isinstance(patch, ProfilePatch):
            return patch
        try:
            return ProfilePatch.model_validate(patch)
        except ValidationError as exc:
            raise ValidationFailed(f"Invalid profile patch: {exc}", original_error=exc)
