"""
Repository Layer Package.

Data-access abstractions over Supabase (cloud) and SQLite (local mirror).
Services never touch ``db.supabase`` or ``db.sqlite`` directly, with the
exception of the per-installation settings service.

Usage:
    from profilehub.repositories import AccountRepository, ProfileRepositoryRouter
"""

from profilehub.repositories.account_repository import AccountRepository
from profilehub.repositories.base_repository import BaseRepository
from profilehub.repositories.constraint_repository import ConstraintRepository
from profilehub.repositories.embedded_profile_repository import EmbeddedProfileRepository
from profilehub.repositories.normalized_profile_repository import NormalizedProfileRepository
from profilehub.repositories.profile_repository import (
    ProfileRepository,
    ProfileRepositoryRouter,
)
from profilehub.repositories.resource_repository import ResourceRepository

__all__ = [
    "AccountRepository",
    "BaseRepository",
    "ConstraintRepository",
    "EmbeddedProfileRepository",
    "NormalizedProfileRepository",
    "ProfileRepository",
    "ProfileRepositoryRouter",
    "ResourceRepository",
]
