"""
Shared Enumerations for ProfileHub Models.

StrEnum values compare equal to their string equivalents, so rows read
back from SQLite or Supabase validate without conversion.
"""

from __future__ import annotations

from enum import IntEnum, StrEnum


class AccountRole(StrEnum):
    """Roles stored on the account row.  Never changed by profile flows."""

    USER = "user"
    ADMIN = "admin"
    STUDENT = "student"


class ProfileStorageVersion(IntEnum):
    """Where an account's profiles live.

    ``EMBEDDED`` accounts keep their profiles inside
    ``accounts.preferences.studentProfiles``; ``NORMALIZED`` accounts use
    the ``student_profiles`` table.  The migration flips 1 -> 2.
    """

    EMBEDDED = 1
    NORMALIZED = 2


class ResourceKind(StrEnum):
    """Discriminator of the scoped-resource union."""

    PROFILE_REF = "profile_ref"
    LEGACY_ACCOUNT_REF = "legacy_account_ref"


class ResolutionSource(StrEnum):
    """Which rule picked the active profile during session resolution."""

    LOCAL_POINTER = "local_pointer"
    SERVER_POINTER = "server_pointer"
    MOST_RECENT = "most_recent"
    CREATED = "created"
    TRANSIENT = "transient"


class BootstrapOutcome(StrEnum):
    """Result of provisioning an account on signup / first login."""

    ACCOUNT_CREATED = "account_created"
    ACCOUNT_CREATED_PROFILE_PENDING = "account_created_profile_pending"
    ALREADY_PROVISIONED = "already_provisioned"


class TableMigrationStatus(StrEnum):
    """Per-table outcome of the constraint tightening step."""

    TIGHTENED = "tightened"
    ALREADY_TIGHTENED = "already_tightened"
    SKIPPED_NULL_REFS = "skipped_null_refs"
    FAILED = "failed"
