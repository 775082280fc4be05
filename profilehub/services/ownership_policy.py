"""
Ownership Policy Engine.

One predicate decides every profile-scoped access:

    is_owner(caller, profile) == profile exists AND profile.is_active
                                 AND profile.account_id == caller

Scoped resources are a tagged union.  A resource with a profile reference
is accessible iff the caller owns that profile.  A legacy resource that
only carries an account reference is accessible iff ``user_id`` equals the
caller *and* its table has not yet had its profile constraint applied.

The engine fails closed: unknown accounts, unknown or inactive profiles,
empty identifiers and store errors all evaluate to "deny".
"""

from __future__ import annotations

from typing import Optional

from profilehub.exceptions import OwnershipDenied
from profilehub.logger import StructuredLogger
from profilehub.models.profile import Profile
from profilehub.models.resource import (
    LegacyResourceWithAccountRef,
    ResourceWithProfileRef,
    ScopedResource,
)
from profilehub.repositories.account_repository import AccountRepository
from profilehub.repositories.constraint_repository import ConstraintRepository
from profilehub.repositories.profile_repository import ProfileRepositoryRouter
from profilehub.services.base_service import BaseService


class OwnershipPolicy(BaseService):
    """Evaluates profile and resource ownership for a calling account."""

    def __init__(
        self,
        account_repo: AccountRepository,
        profile_repo: ProfileRepositoryRouter,
        constraint_repo: ConstraintRepository,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._account_repo = account_repo
        self._profile_repo = profile_repo
        self._constraint_repo = constraint_repo

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def owned_profile(self, caller_account_id: str, target_profile_id: str) -> Optional[Profile]:
        """Return the target profile when the caller owns it, else ``None``."""
        if not caller_account_id or not target_profile_id:
            return None
        try:
            account = self._account_repo.get_by_id(caller_account_id)
            if account is None:
                return None
            profile = self._profile_repo.get(account, target_profile_id)
        except Exception as exc:
            self._logger.warning(
                "Ownership lookup failed for profile %s, denying: %s",
                target_profile_id,
                exc,
            )
            return None

        if profile is None or not profile.is_active:
            return None
        if profile.account_id != caller_account_id:
            return None
        return profile

    def is_owner(self, caller_account_id: str, target_profile_id: str) -> bool:
        return self.owned_profile(caller_account_id, target_profile_id) is not None

    def legacy_window_open(self, table: str) -> bool:
        """``True`` while *table* still admits rows without a profile reference."""
        try:
            return not self._constraint_repo.is_tightened(table)
        except Exception as exc:
            self._logger.warning("Constraint ledger unreadable for %s, denying: %s", table, exc)
            return False

    def can_access(self, caller_account_id: str, resource: ScopedResource) -> bool:
        if isinstance(resource, ResourceWithProfileRef):
            return self.is_owner(caller_account_id, resource.student_profile_id)
        if isinstance(resource, LegacyResourceWithAccountRef):
            if not caller_account_id or not resource.user_id:
                return False
            return (
                resource.user_id == caller_account_id
                and self.legacy_window_open(resource.table)
            )
        return False

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def require_owner(self, caller_account_id: str, target_profile_id: str) -> Profile:
        """Return the owned profile or raise.

        Raises:
            OwnershipDenied: Unless the caller owns an active profile with
                that id.  Missing and foreign profiles are indistinguishable.
        """
        profile = self.owned_profile(caller_account_id, target_profile_id)
        if profile is None:
            self._logger.info(
                "Ownership denied: account %s -> profile %s",
                caller_account_id,
                target_profile_id,
            )
            raise OwnershipDenied(f"Profile {target_profile_id} is not accessible")
        return profile

    def require_access(self, caller_account_id: str, resource: ScopedResource) -> None:
        """Raises:
            OwnershipDenied: If :meth:`can_access` is false.
        """
        if not self.can_access(caller_account_id, resource):
            self._logger.info(
                "Resource access denied: account %s -> %s/%s",
                caller_account_id,
                resource.table,
                resource.id,
            )
            raise OwnershipDenied(f"{resource.table}/{resource.id} is not accessible")
