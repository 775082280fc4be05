"""
Session Synchronizer.

Client-side owner of "which profile is active in this session".

On :meth:`SessionSynchronizer.resolve` it fetches the account and its
active profiles, applies :func:`resolve_active_profile`, creates a profile
when the account has none, stamps the selection through
``ProfileLifecycleService.switch_active`` and persists the pointers the
resolution asks for.

Every store round trip runs on a worker thread and shares one deadline of
``STORE_TIMEOUT_S``.  When the deadline passes or the store fails, the
synchronizer publishes a *degraded* state holding a transient profile.
A transient profile is never written anywhere; :meth:`refresh` (or the
recovery thread) replaces it as soon as the store answers again.

Listeners registered with :meth:`subscribe` receive every new
:class:`SessionState`.
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Callable, Optional, TypeVar

from profilehub.config import AppConfig
from profilehub.exceptions import (
    BackendUnavailable,
    NotFound,
    OwnershipDenied,
    ProfileHubError,
    ValidationFailed,
)
from profilehub.logger import StructuredLogger
from profilehub.models.account import Account
from profilehub.models.enums import ResolutionSource
from profilehub.models.profile import Profile, order_by_recency, utcnow
from profilehub.models.session_models import SessionState
from profilehub.repositories.account_repository import AccountRepository
from profilehub.repositories.profile_repository import ProfileRepositoryRouter
from profilehub.services.local_settings import LocalSettingsService
from profilehub.services.profile_lifecycle import ProfileLifecycleService
from profilehub.services.session_resolution import resolve_active_profile

T = TypeVar("T")

SessionListener = Callable[[SessionState], None]


class SessionSynchronizer:
    """Resolves and tracks the active profile of one signed-in session.

    Parameters
    ----------
    account_repo / profile_repo:
        Store access; the router picks the account's profile
        representation.
    lifecycle:
        Used for every selection (``switch_active``) and for self-heal
        creation.
    local_settings:
        Holds the per-installation active-profile pointer.
    config:
        ``STORE_TIMEOUT_S``, ``STORE_MAX_ATTEMPTS`` and the recovery
        intervals.
    """

    def __init__(
        self,
        account_repo: AccountRepository,
        profile_repo: ProfileRepositoryRouter,
        lifecycle: ProfileLifecycleService,
        local_settings: LocalSettingsService,
        config: AppConfig,
        logger: StructuredLogger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._account_repo = account_repo
        self._profile_repo = profile_repo
        self._lifecycle = lifecycle
        self._local = local_settings
        self._config = config
        self._logger = logger
        self._clock = clock

        self._lock: threading.RLock = threading.RLock()
        self._account_id: Optional[str] = None
        self._state: SessionState = SessionState()
        self._listeners: list[SessionListener] = []

        self._recovery_stop = threading.Event()
        self._recovery_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def account_id(self) -> Optional[str]:
        with self._lock:
            return self._account_id

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, account_id: str) -> SessionState:
        """Determine the active profile for a session of *account_id*.

        Never raises for store problems: those produce a degraded state.
        Returns within ``STORE_TIMEOUT_S`` plus scheduling slack.
        """
        with self._lock:
            self._account_id = account_id
        deadline = time.monotonic() + self._config.STORE_TIMEOUT_S

        try:
            state = self._resolve_online(account_id, deadline)
        except Exception as exc:
            self._logger.bind(account_id=account_id).warning(
                "Session resolution degraded to a transient profile: %s", exc,
            )
            state = self._degraded_state(account_id, exc)

        self._publish(state)
        return state

    def refresh(self) -> SessionState:
        """Re-run resolution for the current account."""
        account_id = self.account_id
        if account_id is None:
            return self.state
        return self.resolve(account_id)

    # ------------------------------------------------------------------
    # Profile operations within the session
    # ------------------------------------------------------------------

    def select_profile(self, profile_id: str) -> SessionState:
        """Switch the session to *profile_id*.

        Raises:
            OwnershipDenied: The account does not own an active profile
                with that id.
            NotFound: No account is signed in.
            BackendUnavailable: The store did not answer in time.
        """
        account_id = self._require_account_id()
        deadline = time.monotonic() + self._config.STORE_TIMEOUT_S

        selected = self._call_bounded(
            lambda: self._lifecycle.switch_active(account_id, profile_id),
            deadline,
            "switch_active",
        )
        self._local.set_active_profile_id(account_id, selected.id)
        self._persist_server_pointer(account_id, selected.id, deadline)

        with self._lock:
            previous = self._state
        profiles = [p for p in previous.profiles if p.id != selected.id and not p.is_transient]
        state = SessionState(
            account=previous.account,
            profiles=order_by_recency([selected, *profiles]),
            active_profile=selected,
            source=ResolutionSource.LOCAL_POINTER,
        )
        self._publish(state)
        return state

    def create_profile(self, name: str, color: Optional[str] = None) -> Profile:
        """Create a profile for the signed-in account without selecting it."""
        account_id = self._require_account_id()
        deadline = time.monotonic() + self._config.STORE_TIMEOUT_S
        profile = self._call_bounded(
            lambda: self._lifecycle.create(account_id, name, color),
            deadline,
            "create_profile",
        )
        with self._lock:
            previous = self._state
        if not previous.is_degraded:
            self._publish(previous.model_copy(
                update={"profiles": order_by_recency([*previous.profiles, profile])}
            ))
        return profile

    def delete_profile(self, profile_id: str) -> SessionState:
        """Soft-delete *profile_id*; if it was active, resolve a new one."""
        account_id = self._require_account_id()
        deadline = time.monotonic() + self._config.STORE_TIMEOUT_S
        self._call_bounded(
            lambda: self._lifecycle.delete(account_id, profile_id),
            deadline,
            "delete_profile",
        )

        with self._lock:
            previous = self._state
        if previous.active_profile_id == profile_id:
            self._local.clear_active_profile_id(account_id)
            return self.resolve(account_id)

        state = previous.model_copy(
            update={"profiles": [p for p in previous.profiles if p.id != profile_id]}
        )
        self._publish(state)
        return state

    def sign_out(self) -> None:
        """Forget this installation's pointer for the account and reset."""
        self.stop_recovery()
        with self._lock:
            account_id = self._account_id
            self._account_id = None
        if account_id is not None:
            self._local.clear_active_profile_id(account_id)
            self._logger.info("Session for account %s signed out", account_id)
        self._publish(SessionState())

    # ------------------------------------------------------------------
    # Background recovery
    # ------------------------------------------------------------------

    def start_recovery(self) -> None:
        """Retry resolution in the background while the state is degraded.

        Safe to call repeatedly; only one recovery thread runs.
        """
        if self._recovery_thread is not None and self._recovery_thread.is_alive():
            return
        self._recovery_stop.clear()
        self._recovery_thread = threading.Thread(
            target=self._recovery_loop,
            name="SessionRecovery",
            daemon=True,
        )
        self._recovery_thread.start()

    def stop_recovery(self) -> None:
        thread = self._recovery_thread
        if thread is None:
            return
        self._recovery_stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout=self._config.STORE_TIMEOUT_S + 1.0)
        self._recovery_thread = None

    def _recovery_loop(self) -> None:
        failures = 0
        try:
            while not self._recovery_stop.is_set():
                interval = min(
                    self._config.RECOVERY_INTERVAL_S * (2 ** min(failures, 6)),
                    self._config.RECOVERY_MAX_INTERVAL_S,
                )
                if self._recovery_stop.wait(timeout=interval):
                    break
                if not self.state.is_degraded:
                    break
                if not self.refresh().is_degraded:
                    self._logger.info("Session recovered after %d retry(ies)", failures + 1)
                    break
                failures += 1
        except Exception:
            self._logger.error("Session recovery thread terminated.", exc_info=True)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _resolve_online(
        self, account_id: str, deadline: float, retry_on_race: bool = True,
    ) -> SessionState:
        account, profiles = self._call_bounded(
            lambda: self._fetch(account_id), deadline, "fetch profiles",
        )

        resolution = resolve_active_profile(
            profiles,
            self._local.get_active_profile_id(account_id),
            account.server_active_profile_id,
        )

        if resolution.profile is None:
            created = self._call_bounded(
                lambda: self._create_first_profile(account), deadline, "create profile",
            )
            chosen, source = created, ResolutionSource.CREATED
            persist_local = persist_server = True
            profiles = [created]
        else:
            chosen, source = resolution.profile, resolution.source
            persist_local, persist_server = resolution.persist_local, resolution.persist_server

        try:
            chosen = self._call_bounded(
                lambda: self._lifecycle.switch_active(account_id, chosen.id),
                deadline,
                "switch_active",
            )
        except OwnershipDenied:
            # Deleted on another device between the fetch and the switch.
            if not retry_on_race:
                raise
            self._logger.info(
                "Profile %s of account %s is no longer active, resolving again",
                chosen.id,
                account_id,
            )
            return self._resolve_online(account_id, deadline, retry_on_race=False)

        if persist_local:
            self._local.set_active_profile_id(account_id, chosen.id)
        error: Optional[str] = None
        if persist_server:
            error = self._persist_server_pointer(account_id, chosen.id, deadline)

        others = [p for p in profiles if p.id != chosen.id]
        self._logger.info(
            "Active profile for account %s resolved to %s (%s)", account_id, chosen.id, source,
        )
        return SessionState(
            account=account,
            profiles=order_by_recency([chosen, *others]),
            active_profile=chosen,
            source=source,
            error=error,
        )

    def _fetch(self, account_id: str) -> tuple[Account, list[Profile]]:
        account = self._account_repo.get_by_id(account_id)
        if account is None:
            raise NotFound(f"Account {account_id} not found")
        return account, self._profile_repo.list_for_account(account)

    def _create_first_profile(self, account: Account) -> Profile:
        """Self-heal for an account that lost (or never got) its profile."""
        name = account.first_name or self._config.FALLBACK_PROFILE_NAME
        try:
            return self._lifecycle.create(account.id, name)
        except ValidationFailed:
            if name == self._config.FALLBACK_PROFILE_NAME:
                raise
            self._logger.warning(
                "Profile name from account %s rejected, using fallback", account.id,
            )
            return self._lifecycle.create(account.id, self._config.FALLBACK_PROFILE_NAME)

    def _persist_server_pointer(
        self, account_id: str, profile_id: str, deadline: float,
    ) -> Optional[str]:
        """Best effort; returns the error text when the write failed."""
        try:
            self._call_bounded(
                lambda: self._account_repo.set_server_active_profile(account_id, profile_id),
                deadline,
                "persist server pointer",
            )
        except Exception as exc:
            self._logger.warning(
                "Server active-profile pointer not persisted for %s: %s", account_id, exc,
            )
            return str(exc)
        return None

    def _call_bounded(self, fn: Callable[[], T], deadline: float, what: str) -> T:
        """Run *fn* on a worker thread, retrying until *deadline*.

        Domain errors (:class:`ProfileHubError`) are not retried.  A timed
        out call is abandoned; its worker thread finishes on its own.

        Raises:
            BackendUnavailable: Deadline passed or every attempt failed.
        """
        last_error: Optional[Exception] = None
        attempt = 0
        while attempt < self._config.STORE_MAX_ATTEMPTS:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            attempt += 1
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="profilehub-store")
            future = executor.submit(fn)
            try:
                return future.result(timeout=remaining)
            except FutureTimeoutError as exc:
                last_error = exc
                self._logger.warning("%s timed out after %.1fs", what, remaining)
                break
            except ProfileHubError:
                raise
            except Exception as exc:
                last_error = exc
                self._logger.warning("%s failed (attempt %d): %s", what, attempt, exc)
            finally:
                executor.shutdown(wait=False, cancel_futures=True)

        raise BackendUnavailable(f"{what} did not complete in time", original_error=last_error)

    def _degraded_state(self, account_id: str, exc: Exception) -> SessionState:
        now = self._clock()
        transient = Profile(
            id=f"transient-{uuid.uuid4()}",
            account_id=account_id,
            profile_name=self._config.FALLBACK_PROFILE_NAME,
            profile_color=self._config.DEFAULT_PROFILE_COLOR,
            created_at=now,
            updated_at=now,
            is_transient=True,
        )
        message = exc.message if isinstance(exc, ProfileHubError) else str(exc)
        return SessionState(
            profiles=[transient],
            active_profile=transient,
            source=ResolutionSource.TRANSIENT,
            is_degraded=True,
            error=message,
        )

    def _require_account_id(self) -> str:
        account_id = self.account_id
        if account_id is None:
            raise NotFound("No account is signed in")
        return account_id

    def _publish(self, state: SessionState) -> None:
        with self._lock:
            self._state = state
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                self._logger.warning("Session listener failed", exc_info=True)
