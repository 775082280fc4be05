"""
Profile Migration Service.

One-shot, idempotent batch that moves every account onto normalized
profiles and attributes legacy data to a profile.  Runs with elevated
rights: it talks to the repositories directly and never consults the
ownership policy.

Per account, the server's rows are first mirrored into SQLite; then, inside
one SQLite transaction (``DatabaseManager.batch_write``, which reads only
the local store):
    0. Promote embedded profiles into ``student_profiles`` (ids kept) and
       flip the account's storage marker.
    1. Create a default profile if the account has no active profile.
    2. Point the account's unattributed resource rows at its default
       profile (the server-pointer profile if active, else the oldest).

Then, per resource table:
    3. With no unattributed and no dangling references left, rebuild the
       table with ``student_profile_id NOT NULL`` + cascading foreign key
       and record it in the constraint ledger.  Otherwise log a
       ``MigrationIncomplete`` warning and leave the table as is.

A failing account is rolled back, logged and reported; the batch goes on.
Re-running is safe: every step is conditional on the work still being
needed.
"""

from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime
from typing import Callable, Optional

from profilehub.config import AppConfig
from profilehub.database import DatabaseManager
from profilehub.exceptions import MigrationIncomplete
from profilehub.logger import StructuredLogger
from profilehub.models.account import PREF_STUDENT_PROFILES, Account
from profilehub.models.enums import ProfileStorageVersion, TableMigrationStatus
from profilehub.models.profile import Profile, utcnow
from profilehub.models.session_models import MigrationReport, TableMigrationReport
from profilehub.repositories.account_repository import AccountRepository
from profilehub.repositories.constraint_repository import ConstraintRepository
from profilehub.repositories.embedded_profile_repository import EmbeddedProfileRepository
from profilehub.repositories.normalized_profile_repository import NormalizedProfileRepository
from profilehub.repositories.resource_repository import ResourceRepository
from profilehub.schema import RESOURCE_TABLES
from profilehub.services.base_service import BaseService
from profilehub.utils.string_helpers import JsonValue, name_key, normalize_profile_name

SYSTEM_ACTOR: str = "system"


class _AccountOutcome:
    __slots__ = ("promoted", "created", "backfilled")

    def __init__(self) -> None:
        self.promoted: int = 0
        self.created: int = 0
        self.backfilled: dict[str, int] = {}


class ProfileMigrationService(BaseService):
    """Backfills profile references and tightens the resource tables."""

    def __init__(
        self,
        db: DatabaseManager,
        account_repo: AccountRepository,
        normalized_repo: NormalizedProfileRepository,
        embedded_repo: EmbeddedProfileRepository,
        resource_repos: dict[str, ResourceRepository],
        constraint_repo: ConstraintRepository,
        config: AppConfig,
        logger: StructuredLogger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(logger, db)
        self._db = db
        self._account_repo = account_repo
        self._normalized_repo = normalized_repo
        self._embedded_repo = embedded_repo
        self._resource_repos = resource_repos
        self._constraint_repo = constraint_repo
        self._config = config
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> MigrationReport:
        """Migrate every account, then tighten every table.

        Returns:
            A :class:`MigrationReport`; ``report.complete`` tells whether
            every table now enforces its profile reference.
        """
        report = MigrationReport(rows_backfilled={t: 0 for t in self._resource_repos})
        account_ids = self._account_repo.list_ids()
        self._logger.info("Profile migration started for %d account(s)", len(account_ids))

        for account_id in account_ids:
            try:
                self._refresh_local_copy(account_id)
                with self._db.batch_write():
                    outcome = self._migrate_account(account_id)
            except Exception as exc:
                self._logger.bind(account_id=account_id).error(
                    "Profile migration failed, account rolled back: %s", exc, exc_info=True,
                )
                report.accounts_failed.append(account_id)
                continue

            report.accounts_processed += 1
            report.profiles_promoted += outcome.promoted
            report.default_profiles_created += outcome.created
            for table, count in outcome.backfilled.items():
                report.rows_backfilled[table] = report.rows_backfilled.get(table, 0) + count

        for table in self._resource_repos:
            report.tables.append(self._tighten(table))

        self._audit(
            "PROFILE_MIGRATION_RUN",
            "Migration",
            str(uuid.uuid4()),
            SYSTEM_ACTOR,
            {
                "accounts_processed": report.accounts_processed,
                "accounts_failed": len(report.accounts_failed),
                "profiles_promoted": report.profiles_promoted,
                "default_profiles_created": report.default_profiles_created,
                "rows_backfilled": sum(report.rows_backfilled.values()),
                "complete": report.complete,
            },
        )
        self._logger.info(
            "Profile migration finished: %d account(s), %d failed, complete=%s",
            report.accounts_processed,
            len(report.accounts_failed),
            report.complete,
        )
        return report

    # ------------------------------------------------------------------
    # Per-account steps
    # ------------------------------------------------------------------

    def _refresh_local_copy(self, account_id: str) -> None:
        """Mirror the server's account and profile rows into SQLite.

        Reads inside ``batch_write`` see only the local store.  Rows with
        writes still queued from an earlier run keep their local version.
        """
        account = self._account_repo.get_by_id(account_id)
        if account is not None:
            self._normalized_repo.list_for_account(account, include_inactive=True)

    def _migrate_account(self, account_id: str) -> _AccountOutcome:
        outcome = _AccountOutcome()
        account = self._account_repo.get_by_id(account_id)
        if account is None:
            return outcome

        if account.is_embedded:
            outcome.promoted = self._promote_embedded(account)
            account = account.model_copy(
                update={"profile_storage_version": ProfileStorageVersion.NORMALIZED}
            )

        active = self._normalized_repo.list_for_account(account)
        if active:
            default = self._pick_default(account, active)
        else:
            default = self._create_default(account)
            outcome.created = 1

        for table, repo in self._resource_repos.items():
            outcome.backfilled[table] = repo.backfill(account.id, default.id)

        if outcome.promoted or outcome.created or any(outcome.backfilled.values()):
            self._logger.info(
                "Account %s migrated: promoted=%d created=%d backfilled=%d",
                account.id,
                outcome.promoted,
                outcome.created,
                sum(outcome.backfilled.values()),
            )
        return outcome

    def _promote_embedded(self, account: Account) -> int:
        """Copy embedded profiles into ``student_profiles`` and flip the marker."""
        promoted = 0
        seen_active: set[str] = set()
        for profile in self._embedded_repo.parse_entries(account):
            profile = self._sanitize_for_promotion(profile, seen_active)
            if self._normalized_repo.promote(profile):
                promoted += 1

        def _drop_embedded(prefs: dict[str, JsonValue]) -> dict[str, JsonValue]:
            prefs.pop(PREF_STUDENT_PROFILES, None)
            return prefs

        self._account_repo.update_preferences(account.id, _drop_embedded)
        self._account_repo.set_storage_version(account.id, ProfileStorageVersion.NORMALIZED)
        return promoted

    def _sanitize_for_promotion(self, profile: Profile, seen_active: set[str]) -> Profile:
        """Make an embedded entry satisfy the table constraints.

        Blank names get the fallback name, long names are cut, and active
        names already taken get a numeric suffix.
        """
        limit = self._config.PROFILE_NAME_MAX_LENGTH
        name = normalize_profile_name(profile.profile_name) or self._config.FALLBACK_PROFILE_NAME
        name = name[:limit].rstrip()

        if profile.is_active:
            candidate, suffix = name, 2
            while name_key(candidate) in seen_active:
                tail = f" {suffix}"
                candidate = name[: limit - len(tail)].rstrip() + tail
                suffix += 1
            name = candidate
            seen_active.add(name_key(name))

        if name != profile.profile_name:
            self._logger.warning(
                "Embedded profile %s renamed to %r during promotion", profile.id, name,
            )
            profile = profile.model_copy(update={"profile_name": name})
        return profile

    def _pick_default(self, account: Account, active: list[Profile]) -> Profile:
        pointer = account.server_active_profile_id
        for profile in active:
            if profile.id == pointer:
                return profile
        return min(active, key=lambda p: (p.created_at, p.id))

    def _create_default(self, account: Account) -> Profile:
        now = self._clock()
        profile = Profile(
            id=str(uuid.uuid4()),
            account_id=account.id,
            profile_name=self._config.DEFAULT_PROFILE_NAME,
            profile_color=self._config.DEFAULT_PROFILE_COLOR,
            created_at=now,
            updated_at=now,
        )
        self._normalized_repo.insert(account, profile)
        return profile

    # ------------------------------------------------------------------
    # Per-table step
    # ------------------------------------------------------------------

    def _tighten(self, table: str) -> TableMigrationReport:
        repo = self._resource_repos[table]

        if repo.has_not_null_constraint():
            if not self._constraint_repo.is_tightened(table):
                self._constraint_repo.mark_tightened(table)
            return TableMigrationReport(table=table, status=TableMigrationStatus.ALREADY_TIGHTENED)

        null_count = repo.count_null_refs()
        orphan_count = repo.count_orphan_refs()
        if null_count or orphan_count:
            warning = MigrationIncomplete(table, null_count, orphan_count)
            self._logger.warning("Profile constraint skipped: %s", warning.message)
            return TableMigrationReport(
                table=table,
                status=TableMigrationStatus.SKIPPED_NULL_REFS,
                null_count=null_count,
                orphan_count=orphan_count,
            )

        try:
            with self._db.batch_write():
                repo.apply_profile_constraint()
                self._constraint_repo.mark_tightened(table)
        except sqlite3.Error as exc:
            self._logger.error("Profile constraint failed for %s: %s", table, exc)
            return TableMigrationReport(table=table, status=TableMigrationStatus.FAILED)

        self._logger.info("Profile constraint applied to %s", table)
        return TableMigrationReport(table=table, status=TableMigrationStatus.TIGHTENED)


def build_resource_repositories(
    db: DatabaseManager,
    logger: StructuredLogger,
    tables: Optional[list[str]] = None,
) -> dict[str, ResourceRepository]:
    """One :class:`ResourceRepository` per scoped table, in configured order."""
    return {
        table: ResourceRepository(db=db, logger=logger, table=table)
        for table in (tables if tables is not None else RESOURCE_TABLES)
    }
