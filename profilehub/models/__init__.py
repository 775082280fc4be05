"""
Data Models Package.

Re-exports the Pydantic models:
    from profilehub.models import Account, Profile, ProfilePatch, SessionState
"""

from profilehub.models.account import Account, AccountUpdate
from profilehub.models.enums import (
    AccountRole,
    BootstrapOutcome,
    ProfileStorageVersion,
    ResolutionSource,
    ResourceKind,
    TableMigrationStatus,
)
from profilehub.models.profile import Profile, ProfilePatch
from profilehub.models.resource import (
    LegacyResourceWithAccountRef,
    ResourceWithProfileRef,
    ScopedResource,
)
from profilehub.models.service_models import ServiceResult
from profilehub.models.session_models import (
    BootstrapResult,
    MigrationReport,
    Resolution,
    SessionState,
    TableMigrationReport,
)

__all__ = [
    "Account",
    "AccountRole",
    "AccountUpdate",
    "BootstrapOutcome",
    "BootstrapResult",
    "LegacyResourceWithAccountRef",
    "MigrationReport",
    "Profile",
    "ProfilePatch",
    "ProfileStorageVersion",
    "Resolution",
    "ResolutionSource",
    "ResourceKind",
    "ResourceWithProfileRef",
    "ScopedResource",
    "ServiceResult",
    "SessionState",
    "TableMigrationReport",
    "TableMigrationStatus",
]
