from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from profilehub.auth import SessionManager
from profilehub.config import AppConfig
from profilehub.database import DatabaseManager
from profilehub.logger import StructuredLogger
from profilehub.models.account import Account
from profilehub.repositories.account_repository import AccountRepository
from profilehub.repositories.constraint_repository import ConstraintRepository
from profilehub.repositories.embedded_profile_repository import EmbeddedProfileRepository
from profilehub.repositories.normalized_profile_repository import NormalizedProfileRepository
from profilehub.repositories.profile_repository import ProfileRepositoryRouter
from profilehub.schema import initialize_schema
from profilehub.services.account_bootstrap import AccountBootstrapService
from profilehub.services.local_settings import LocalSettingsService
from profilehub.services.migration import ProfileMigrationService, build_resource_repositories
from profilehub.services.ownership_policy import OwnershipPolicy
from profilehub.services.profile_api import ProfileApi
from profilehub.services.profile_lifecycle import ProfileLifecycleService
from profilehub.services.resources import ScopedResourceService
from profilehub.services.session_sync import SessionSynchronizer

ACCOUNT_ID = "acct-ada"
OTHER_ACCOUNT_ID = "acct-bob"


class FakeClock:
    """Deterministic clock; tests move it explicitly."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def config(tmp_path):
    return AppConfig(
        SUPABASE_URL="",
        SUPABASE_ANON_KEY="",
        SUPABASE_SERVICE_ROLE_KEY="",
        SQLITE_PATH=tmp_path / "profilehub_test.db",
        STORE_TIMEOUT_S=2.0,
        STORE_MAX_ATTEMPTS=2,
        RECOVERY_INTERVAL_S=0.05,
        LOG_FILE="",
    )


@pytest.fixture()
def logger(request):
    # One logger per test so no handler outlives the test's captured stdout.
    return StructuredLogger(name=f"profilehub.tests.{request.node.name}", log_file="")


@pytest.fixture()
def db(config, logger):
    manager = DatabaseManager(
        supabase_url="",
        supabase_key="",
        sqlite_path=config.SQLITE_PATH,
        logger=logger,
    )
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


@pytest.fixture()
def clock():
    return FakeClock(datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

@pytest.fixture()
def account_repo(db, logger):
    return AccountRepository(db=db, logger=logger)


@pytest.fixture()
def normalized_repo(db, logger):
    return NormalizedProfileRepository(db=db, logger=logger)


@pytest.fixture()
def embedded_repo(db, logger, account_repo):
    return EmbeddedProfileRepository(db=db, logger=logger, account_repo=account_repo)


@pytest.fixture()
def profile_repo(normalized_repo, embedded_repo):
    return ProfileRepositoryRouter(normalized=normalized_repo, embedded=embedded_repo)


@pytest.fixture()
def constraint_repo(db, logger):
    return ConstraintRepository(db=db, logger=logger)


@pytest.fixture()
def resource_repos(db, logger):
    return build_resource_repositories(db, logger)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture()
def policy(account_repo, profile_repo, constraint_repo, logger):
    return OwnershipPolicy(
        account_repo=account_repo,
        profile_repo=profile_repo,
        constraint_repo=constraint_repo,
        logger=logger,
    )


@pytest.fixture()
def lifecycle(account_repo, profile_repo, policy, db, config, logger, clock):
    return ProfileLifecycleService(
        account_repo=account_repo,
        profile_repo=profile_repo,
        policy=policy,
        db=db,
        config=config,
        logger=logger,
        clock=clock,
    )


@pytest.fixture()
def bootstrap(account_repo, profile_repo, db, config, logger, clock):
    return AccountBootstrapService(
        account_repo=account_repo,
        profile_repo=profile_repo,
        db=db,
        config=config,
        logger=logger,
        clock=clock,
    )


@pytest.fixture()
def migration(
    db, account_repo, normalized_repo, embedded_repo, resource_repos,
    constraint_repo, config, logger, clock,
):
    return ProfileMigrationService(
        db=db,
        account_repo=account_repo,
        normalized_repo=normalized_repo,
        embedded_repo=embedded_repo,
        resource_repos=resource_repos,
        constraint_repo=constraint_repo,
        config=config,
        logger=logger,
        clock=clock,
    )


@pytest.fixture()
def local_settings(db, logger):
    return LocalSettingsService(db=db, logger=logger)


@pytest.fixture()
def synchronizer(account_repo, profile_repo, lifecycle, local_settings, config, logger, clock):
    sync = SessionSynchronizer(
        account_repo=account_repo,
        profile_repo=profile_repo,
        lifecycle=lifecycle,
        local_settings=local_settings,
        config=config,
        logger=logger,
        clock=clock,
    )
    yield sync
    sync.stop_recovery()


@pytest.fixture()
def session():
    return SessionManager()


@pytest.fixture()
def profile_api(session, lifecycle, policy, synchronizer, logger):
    return ProfileApi(
        session=session,
        lifecycle=lifecycle,
        policy=policy,
        synchronizer=synchronizer,
        logger=logger,
    )


@pytest.fixture()
def resource_service(policy, resource_repos, logger):
    return ScopedResourceService(policy=policy, resource_repos=resource_repos, logger=logger)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

@pytest.fixture()
def account(account_repo, clock):
    return account_repo.insert(Account(
        id=ACCOUNT_ID,
        email="ada@example.com",
        full_name="Ada Lovelace",
        created_at=clock(),
        updated_at=clock(),
    ))


@pytest.fixture()
def other_account(account_repo, clock):
    return account_repo.insert(Account(
        id=OTHER_ACCOUNT_ID,
        email="bob@example.com",
        full_name="Bob Stone",
        created_at=clock(),
        updated_at=clock(),
    ))
