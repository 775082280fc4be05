"""
Scoped Resource Service.

Profile-scoped CRUD over the resource tables.  Every call evaluates the
ownership policy before touching a row; the repositories underneath do no
checks of their own.
"""

from __future__ import annotations

import uuid
from typing import Optional

from profilehub.exceptions import NotFound, ValidationFailed
from profilehub.logger import StructuredLogger
from profilehub.models.resource import ScopedResource
from profilehub.repositories.resource_repository import ResourceRepository
from profilehub.services.base_service import BaseService
from profilehub.services.ownership_policy import OwnershipPolicy
from profilehub.utils.string_helpers import JsonValue


class ScopedResourceService(BaseService):
    """Policy-gated access to documents, notifications and the rest."""

    def __init__(
        self,
        policy: OwnershipPolicy,
        resource_repos: dict[str, ResourceRepository],
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._policy = policy
        self._repos = resource_repos

    def list_for_profile(
        self,
        caller_account_id: str,
        table: str,
        profile_id: str,
        include_legacy: bool = False,
    ) -> list[ScopedResource]:
        """Rows of *table* that belong to *profile_id*.

        With ``include_legacy`` the caller's rows that still lack a profile
        reference are appended, as long as the table admits them.

        Raises:
            OwnershipDenied: The caller does not own the profile.
        """
        repo = self._repo(table)
        self._policy.require_owner(caller_account_id, profile_id)
        rows = repo.list_by_profile(profile_id)
        if include_legacy and self._policy.legacy_window_open(table):
            rows.extend(
                r for r in repo.list_legacy_for_account(caller_account_id)
                if self._policy.can_access(caller_account_id, r)
            )
        return rows

    def get(self, caller_account_id: str, table: str, resource_id: str) -> ScopedResource:
        """Raises:
            NotFound: No such row.
            OwnershipDenied: The row belongs to someone else.
        """
        resource = self._repo(table).get(resource_id)
        if resource is None:
            raise NotFound(f"{table}/{resource_id} not found")
        self._policy.require_access(caller_account_id, resource)
        return resource

    def create(
        self,
        caller_account_id: str,
        table: str,
        profile_id: str,
        payload: Optional[dict[str, JsonValue]] = None,
    ) -> ScopedResource:
        repo = self._repo(table)
        self._policy.require_owner(caller_account_id, profile_id)
        resource = repo.insert(str(uuid.uuid4()), caller_account_id, profile_id, payload or {})
        self._logger.debug("Created %s/%s for profile %s", table, resource.id, profile_id)
        return resource

    def update_payload(
        self,
        caller_account_id: str,
        table: str,
        resource_id: str,
        payload: dict[str, JsonValue],
    ) -> ScopedResource:
        resource = self.get(caller_account_id, table, resource_id)
        self._repo(table).update_payload(resource_id, payload)
        return resource.model_copy(update={"payload": payload})

    def delete(self, caller_account_id: str, table: str, resource_id: str) -> None:
        self.get(caller_account_id, table, resource_id)
        self._repo(table).delete(resource_id)
        self._audit("RESOURCE_DELETE", table, resource_id, caller_account_id)

    def _repo(self, table: str) -> ResourceRepository:
        repo = self._repos.get(table)
        if repo is None:
            raise ValidationFailed(f"Unknown resource table {table!r}")
        return repo
