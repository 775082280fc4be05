"""
Account Settings Service.

Lets an account owner edit its own non-privileged fields.  ``role`` and
``credits_remaining`` are not reachable from here.  Writes to the
``preferences`` blob are merged into the stored blob so the keys the
profile core relies on (``activeProfileId``, ``studentProfiles``) survive
unless explicitly replaced.
"""

from __future__ import annotations

from typing import Union

from pydantic import ValidationError

from profilehub.database import DatabaseManager
from profilehub.exceptions import NotFound, ValidationFailed
from profilehub.logger import StructuredLogger
from profilehub.models.account import Account, AccountUpdate
from profilehub.repositories.account_repository import AccountRepository
from profilehub.services.base_service import BaseService
from profilehub.utils.string_helpers import JsonValue


class AccountService(BaseService):
    """Self-service account updates."""

    def __init__(
        self,
        account_repo: AccountRepository,
        db: DatabaseManager,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger, db)
        self._account_repo = account_repo

    def get_account(self, account_id: str) -> Account:
        account = self._account_repo.get_by_id(account_id)
        if account is None:
            raise NotFound(f"Account {account_id} not found")
        return account

    def update_account(
        self,
        account_id: str,
        update: Union[AccountUpdate, dict[str, JsonValue]],
    ) -> Account:
        """Apply an :class:`AccountUpdate`.

        Raises:
            ValidationFailed: Unknown or privileged fields.
            NotFound: Unknown account.
        """
        if not isinstance(update, AccountUpdate):
            try:
                update = AccountUpdate.model_validate(update)
            except ValidationError as exc:
                raise ValidationFailed(f"Invalid account update: {exc}", original_error=exc)

        account = self.get_account(account_id)
        fields: dict[str, JsonValue] = {}
        if update.full_name is not None:
            fields["full_name"] = update.full_name.strip()
        if update.onboarding_completed is not None:
            fields["onboarding_completed"] = update.onboarding_completed

        if fields:
            account = self._account_repo.update_fields(account_id, fields) or account
        if update.preferences is not None:
            incoming = update.preferences
            account = self._account_repo.update_preferences(
                account_id, lambda prefs: {**prefs, **incoming},
            )

        changed = sorted(update.model_fields_set)
        if changed:
            self._audit("ACCOUNT_UPDATE", "Account", account_id, account_id, {"fields": ",".join(changed)})
        return account
