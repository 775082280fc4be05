"""
Profile API facade.

Client-facing entry points for profile operations.  The caller's identity
comes from the shared ``SessionManager``; nothing here takes an account id.
Every operation returns a :class:`ServiceResult` instead of raising:

    401  no account signed in
    400  validation failure
    403  not the owner (missing and foreign profiles look the same)
    404  unknown account
    503  store unavailable
    500  anything unexpected
"""

from __future__ import annotations

from typing import Callable, Optional, TypeVar, Union

from profilehub.auth import AuthenticationError, SessionManager, require_auth
from profilehub.exceptions import ProfileHubError
from profilehub.logger import StructuredLogger
from profilehub.models.profile import Profile, ProfilePatch
from profilehub.models.service_models import ServiceResult
from profilehub.services.base_service import BaseService
from profilehub.services.ownership_policy import OwnershipPolicy
from profilehub.services.profile_lifecycle import ProfileLifecycleService
from profilehub.services.session_sync import SessionSynchronizer
from profilehub.utils.string_helpers import JsonValue

T = TypeVar("T")


class ProfileApi(BaseService):
    """Profile operations on behalf of the signed-in account."""

    def __init__(
        self,
        session: SessionManager,
        lifecycle: ProfileLifecycleService,
        policy: OwnershipPolicy,
        synchronizer: Optional[SessionSynchronizer],
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._session = session
        self._lifecycle = lifecycle
        self._policy = policy
        self._synchronizer = synchronizer
        self._guard = require_auth(session)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_owner(self, profile_id: str) -> bool:
        """``True`` iff the signed-in account owns an active profile *profile_id*."""
        caller = self._session.current_account_id
        if caller is None:
            return False
        return self._policy.is_owner(caller, profile_id)

    def list_profiles(self) -> ServiceResult[list[Profile]]:
        return self._run("list_profiles", self._lifecycle.list_profiles)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def switch_active(self, profile_id: str) -> ServiceResult[Profile]:
        def _switch(caller: str) -> Profile:
            sync = self._synced_for(caller)
            if sync is None:
                return self._lifecycle.switch_active(caller, profile_id)
            state = sync.select_profile(profile_id)
            assert state.active_profile is not None
            return state.active_profile

        return self._run("switch_active", _switch)

    def create_profile(self, name: str, color: Optional[str] = None) -> ServiceResult[Profile]:
        def _create(caller: str) -> Profile:
            sync = self._synced_for(caller)
            if sync is None:
                return self._lifecycle.create(caller, name, color)
            return sync.create_profile(name, color)

        return self._run("create_profile", _create, success_status=201)

    def update_profile(
        self,
        profile_id: str,
        patch: Union[ProfilePatch, dict[str, JsonValue]],
    ) -> ServiceResult[Profile]:
        return self._run(
            "update_profile",
            lambda caller: self._lifecycle.update(caller, profile_id, patch),
        )

    def delete_profile(self, profile_id: str) -> ServiceResult[None]:
        def _delete(caller: str) -> None:
            sync = self._synced_for(caller)
            if sync is None:
                self._lifecycle.delete(caller, profile_id)
            else:
                sync.delete_profile(profile_id)

        return self._run("delete_profile", _delete)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _synced_for(self, caller: str) -> Optional[SessionSynchronizer]:
        """The synchronizer, if it tracks *caller*'s session."""
        if self._synchronizer is not None and self._synchronizer.account_id == caller:
            return self._synchronizer
        return None

    def _run(
        self,
        operation: str,
        fn: Callable[[str], T],
        success_status: int = 200,
    ) -> ServiceResult[T]:
        @self._guard
        def _call() -> T:
            return fn(self._session.get_current_account().id)

        try:
            data = _call()
        except AuthenticationError as exc:
            return ServiceResult(success=False, error=str(exc), status_code=401)
        except ProfileHubError as exc:
            self._logger.info("%s rejected (%d): %s", operation, exc.status_code, exc.message)
            return ServiceResult(success=False, error=exc.message, status_code=exc.status_code)
        except Exception as exc:
            self._logger.error("%s failed: %s", operation, exc, exc_info=True)
            return ServiceResult(
                success=False,
                error=f"Unexpected error in {operation}: {exc}",
                status_code=500,
            )
        return ServiceResult(success=True, data=data, status_code=success_status)
