"""
Active-profile resolution rules.

Pure function of the fetched profiles and the two pointers; no I/O.  The
session synchronizer applies the returned :class:`Resolution`.
"""

from __future__ import annotations

from typing import Optional

from profilehub.models.enums import ResolutionSource
from profilehub.models.profile import Profile, order_by_recency
from profilehub.models.session_models import Resolution


def resolve_active_profile(
    profiles: list[Profile],
    stored_pointer: Optional[str],
    server_pointer: Optional[str],
) -> Resolution:
    """Pick the active profile for a starting session.

    Order of precedence:

    1. The locally stored pointer, if it names one of *profiles*.
    2. The server-side pointer (``preferences.activeProfileId``); the
       choice is then persisted locally.
    3. The most recently accessed profile; persisted locally and on the
       server.

    An empty *profiles* list yields ``Resolution(profile=None)``.
    Inactive profiles are never selected.
    """
    active = [p for p in profiles if p.is_active]
    if not active:
        return Resolution()

    by_id = {p.id: p for p in active}

    if stored_pointer and stored_pointer in by_id:
        return Resolution(profile=by_id[stored_pointer], source=ResolutionSource.LOCAL_POINTER)

    if server_pointer and server_pointer in by_id:
        return Resolution(
            profile=by_id[server_pointer],
            source=ResolutionSource.SERVER_POINTER,
            persist_local=True,
        )

    return Resolution(
        profile=order_by_recency(active)[0],
        source=ResolutionSource.MOST_RECENT,
        persist_local=True,
        persist_server=True,
    )
