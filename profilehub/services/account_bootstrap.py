"""
Account Bootstrap Service.

Provisions an account the first time its credentials are seen, together
with exactly one default profile.

Provisioning strategy:
    - The account row must be created; if that fails nothing is created
      and :class:`BootstrapError` propagates.
    - The default profile is best effort.  Its failure is logged and
      audited, and the result reports ``ACCOUNT_CREATED_PROFILE_PENDING``;
      the session synchronizer creates a profile on the next start.
    - New accounts always get ``role = user`` with no credits.  Existing
      accounts only have ``email`` and ``full_name`` synchronised.
    - Concurrent first logins: if the insert fails, the lookup is retried
      before giving up.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, Optional

from profilehub.config import AppConfig
from profilehub.database import DatabaseManager
from profilehub.exceptions import BootstrapError
from profilehub.logger import StructuredLogger
from profilehub.models.account import Account
from profilehub.models.enums import AccountRole, BootstrapOutcome, ProfileStorageVersion
from profilehub.models.profile import Profile, utcnow
from profilehub.models.session_models import BootstrapResult
from profilehub.repositories.account_repository import AccountRepository
from profilehub.repositories.profile_repository import ProfileRepositoryRouter
from profilehub.services.base_service import BaseService
from profilehub.utils.string_helpers import JsonValue, has_control_chars, normalize_profile_name

INITIAL_PROFILE_NAME_KEY: str = "initial_profile_name"


class AccountBootstrapService(BaseService):
    """Creates accounts and their first profile."""

    def __init__(
        self,
        account_repo: AccountRepository,
        profile_repo: ProfileRepositoryRouter,
        db: DatabaseManager,
        config: AppConfig,
        logger: StructuredLogger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(logger, db)
        self._account_repo = account_repo
        self._profile_repo = profile_repo
        self._config = config
        self._clock = clock

    def on_account_created(
        self,
        account_id: str,
        email: str,
        full_name: str = "",
        metadata: Optional[dict[str, JsonValue]] = None,
    ) -> BootstrapResult:
        """Insert the account row, then its default profile.

        Args:
            account_id: Auth user id.
            email: Login email.
            full_name: Display name from the signup form.
            metadata: Signup metadata; ``initial_profile_name`` names the
                first profile.

        Raises:
            BootstrapError: If the account row cannot be created.
        """
        now = self._clock()
        account = Account(
            id=account_id,
            email=email,
            full_name=full_name or "",
            role=AccountRole.USER,
            credits_remaining=0,
            onboarding_completed=False,
            preferences={},
            profile_storage_version=ProfileStorageVersion.NORMALIZED,
            created_at=now,
            updated_at=now,
        )
        try:
            account = self._account_repo.insert(account)
        except Exception as exc:
            self._logger.error("Bootstrap: account %s could not be created: %s", account_id, exc)
            raise BootstrapError(
                f"Failed to create account {account_id}", original_error=exc,
            )

        self._audit(
            "ACCOUNT_CREATE", "Account", account_id, account_id,
            {"email": email, "role": str(AccountRole.USER)},
        )

        profile_name = self._initial_profile_name(metadata)
        profile = Profile(
            id=str(uuid.uuid4()),
            account_id=account_id,
            profile_name=profile_name,
            profile_color=self._config.DEFAULT_PROFILE_COLOR,
            created_at=now,
            updated_at=now,
        )
        try:
            profile = self._profile_repo.insert(account, profile)
        except Exception as exc:
            self._logger.warning(
                "Bootstrap: default profile for account %s failed, will be created on "
                "next session start: %s",
                account_id,
                exc,
                exc_info=True,
            )
            self._audit(
                "PROFILE_BOOTSTRAP_FAILED", "Account", account_id, account_id,
                {"error": str(exc)},
            )
            return BootstrapResult(
                outcome=BootstrapOutcome.ACCOUNT_CREATED_PROFILE_PENDING,
                account=account,
                error=str(exc),
            )

        self._audit(
            "PROFILE_CREATE", "Profile", profile.id, account_id,
            {"profile_name": profile.profile_name, "source": "bootstrap"},
        )
        self._logger.info("Bootstrap: account %s provisioned with profile %s", account_id, profile.id)
        return BootstrapResult(
            outcome=BootstrapOutcome.ACCOUNT_CREATED, account=account, profile=profile,
        )

    def ensure_provisioned(
        self,
        account_id: str,
        email: str,
        full_name: str = "",
        metadata: Optional[dict[str, JsonValue]] = None,
    ) -> BootstrapResult:
        """First-authentication hook: provision if missing, else sync identity.

        ``role`` is never taken from the identity provider.

        Raises:
            BootstrapError: If the account neither exists nor can be created.
        """
        existing = self._account_repo.get_by_id(account_id)
        if existing is None:
            try:
                return self.on_account_created(account_id, email, full_name, metadata)
            except BootstrapError as exc:
                self._logger.warning(
                    "Bootstrap: insert failed for %s, retrying lookup: %s", account_id, exc.message,
                )
                existing = self._account_repo.get_by_id(account_id)
                if existing is None:
                    raise

        changes: dict[str, JsonValue] = {}
        if email and existing.email != email:
            changes["email"] = email
        if full_name and existing.full_name != full_name:
            changes["full_name"] = full_name
        if changes:
            existing = self._account_repo.update_fields(account_id, changes) or existing
            self._audit(
                "ACCOUNT_SYNC", "Account", account_id, account_id,
                {"fields": ",".join(sorted(changes))},
            )

        return BootstrapResult(outcome=BootstrapOutcome.ALREADY_PROVISIONED, account=existing)

    def _initial_profile_name(self, metadata: Optional[dict[str, JsonValue]]) -> str:
        requested = (metadata or {}).get(INITIAL_PROFILE_NAME_KEY)
        if isinstance(requested, str):
            cleaned = normalize_profile_name(requested)
            if (
                cleaned
                and len(cleaned) <= self._config.PROFILE_NAME_MAX_LENGTH
                and not has_control_chars(cleaned)
            ):
                return cleaned
            if cleaned:
                self._logger.warning(
                    "Bootstrap: initial profile name rejected, using default."
                )
        return self._config.DEFAULT_PROFILE_NAME
