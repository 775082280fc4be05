"""
Authentication & Session State.

``SessionManager`` holds the authenticated account for the lifetime of a
client session; ``require_auth`` gates facade methods behind it.

Usage::

    from profilehub.auth import SessionManager, require_auth

    session = SessionManager()
    session.set_current_account(account)

    @require_auth(session)
    def some_operation() -> str:
        return "only reachable when signed in"
"""

from __future__ import annotations

import threading
from functools import wraps
from typing import Callable, Optional, ParamSpec, TypeVar

from profilehub.models.account import Account

P = ParamSpec("P")
R = TypeVar("R")


class AuthenticationError(RuntimeError):
    """Raised when a guarded function is called without an active session."""


class SessionManager:
    """Injectable holder for the signed-in account.

    Pass a single instance through the service container so every
    component sees the same caller identity.
    """

    def __init__(self) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._current_account: Optional[Account] = None

    def set_current_account(self, account: Account) -> None:
        with self._lock:
            self._current_account = account

    def get_current_account(self) -> Account:
        """Return the signed-in account.

        Raises:
            AuthenticationError: If no account is signed in.
        """
        with self._lock:
            if self._current_account is None:
                raise AuthenticationError("No account is signed in. Login required.")
            return self._current_account

    @property
    def current_account_id(self) -> Optional[str]:
        with self._lock:
            return self._current_account.id if self._current_account else None

    def clear(self) -> None:
        with self._lock:
            self._current_account = None

    @property
    def is_authenticated(self) -> bool:
        with self._lock:
            return self._current_account is not None


def require_auth(session: SessionManager) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Return a decorator that enforces an authenticated *session*.

    Args:
        session: The shared ``SessionManager``.

    Returns:
        A decorator raising :class:`AuthenticationError` when no account
        is signed in at call time.
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            if not session.is_authenticated:
                raise AuthenticationError(
                    "Authentication required. Please sign in before "
                    "performing this action."
                )
            return func(*args, **kwargs)

        return wrapper

    return decorator
