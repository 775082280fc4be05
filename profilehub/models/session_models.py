"""
Session, Bootstrap and Migration Result Models.

Immutable value objects handed from services to callers.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from profilehub.models.account import Account
from profilehub.models.enums import (
    BootstrapOutcome,
    ResolutionSource,
    TableMigrationStatus,
)
from profilehub.models.profile import Profile

__all__ = [
    "BootstrapResult",
    "MigrationReport",
    "Resolution",
    "SessionState",
    "TableMigrationReport",
]


# ---------------------------------------------------------------------------
# Session synchronizer
# ---------------------------------------------------------------------------

class Resolution(BaseModel):
    """Output of the pure active-profile resolution step.

    ``profile`` is ``None`` only when the account has no active profile;
    the synchronizer then creates one.
    """

    model_config = ConfigDict(frozen=True)

    profile: Optional[Profile] = None
    source: Optional[ResolutionSource] = None
    persist_local: bool = False
    persist_server: bool = False


class SessionState(BaseModel):
    """Snapshot of who is signed in and which profile is active."""

    model_config = ConfigDict(frozen=True)

    account: Optional[Account] = None
    profiles: list[Profile] = Field(default_factory=list)
    active_profile: Optional[Profile] = None
    source: Optional[ResolutionSource] = None
    is_degraded: bool = False
    error: Optional[str] = None

    @property
    def active_profile_id(self) -> Optional[str]:
        return self.active_profile.id if self.active_profile else None


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

class BootstrapResult(BaseModel):
    """What provisioning did for one account."""

    outcome: BootstrapOutcome
    account: Account
    profile: Optional[Profile] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------

class TableMigrationReport(BaseModel):
    table: str
    status: TableMigrationStatus
    null_count: int = 0
    orphan_count: int = 0


class MigrationReport(BaseModel):
    """Aggregate outcome of one ``ProfileMigrationService.run()``."""

    accounts_processed: int = 0
    accounts_failed: list[str] = Field(default_factory=list)
    profiles_promoted: int = 0
    default_profiles_created: int = 0
    rows_backfilled: dict[str, int] = Field(default_factory=dict)
    tables: list[TableMigrationReport] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        """``True`` when every table ended up tightened and no account failed."""
        return not self.accounts_failed and all(
            t.status in (TableMigrationStatus.TIGHTENED, TableMigrationStatus.ALREADY_TIGHTENED)
            for t in self.tables
        )
