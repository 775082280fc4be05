"""
Business Logic Services Package.

The ``create_services()`` factory wires every repository and service
together and returns a typed dict, so entry points (CLI, UI, tests) use
the services without knowing the dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

from profilehub.auth import SessionManager
from profilehub.config import AppConfig
from profilehub.database import DatabaseManager
from profilehub.logger import StructuredLogger, get_logger
from profilehub.repositories.account_repository import AccountRepository
from profilehub.repositories.constraint_repository import ConstraintRepository
from profilehub.repositories.embedded_profile_repository import EmbeddedProfileRepository
from profilehub.repositories.normalized_profile_repository import NormalizedProfileRepository
from profilehub.repositories.profile_repository import ProfileRepositoryRouter
from profilehub.services.account_bootstrap import AccountBootstrapService
from profilehub.services.accounts import AccountService
from profilehub.services.local_settings import LocalSettingsService
from profilehub.services.migration import ProfileMigrationService, build_resource_repositories
from profilehub.services.ownership_policy import OwnershipPolicy
from profilehub.services.profile_api import ProfileApi
from profilehub.services.profile_lifecycle import ProfileLifecycleService
from profilehub.services.resources import ScopedResourceService
from profilehub.services.session_sync import SessionSynchronizer
from profilehub.services.sync_worker import SyncWorkerService


class ServiceContainer(TypedDict):
    """Typed container for all application services."""

    # --- Profile core ---
    ownership_policy: OwnershipPolicy
    profile_lifecycle: ProfileLifecycleService
    account_bootstrap: AccountBootstrapService
    migration: ProfileMigrationService
    session_synchronizer: SessionSynchronizer
    profile_api: ProfileApi

    # --- Supporting ---
    account_service: AccountService
    resource_service: ScopedResourceService
    local_settings: LocalSettingsService
    sync_worker: SyncWorkerService


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    session: SessionManager,
    logger: Optional[StructuredLogger] = None,
) -> ServiceContainer:
    """Wire all repositories and services together.

    This is the single composition root for the service layer.

    Args:
        db: Initialised DatabaseManager (schema already applied).
        config: Application configuration.
        session: Shared holder of the signed-in account.
        logger: Optional logger; defaults to ``get_logger("services")``.
    """
    logger = logger or get_logger("services")

    # ------------------------------------------------------------------
    # 1. Repositories
    # ------------------------------------------------------------------
    account_repo = AccountRepository(db=db, logger=logger)
    normalized_repo = NormalizedProfileRepository(db=db, logger=logger)
    embedded_repo = EmbeddedProfileRepository(db=db, logger=logger, account_repo=account_repo)
    profile_repo = ProfileRepositoryRouter(normalized=normalized_repo, embedded=embedded_repo)
    constraint_repo = ConstraintRepository(db=db, logger=logger)
    resource_repos = build_resource_repositories(db, logger, config.SCOPED_RESOURCE_TABLES)

    # ------------------------------------------------------------------
    # 2. Leaf services
    # ------------------------------------------------------------------
    policy = OwnershipPolicy(
        account_repo=account_repo,
        profile_repo=profile_repo,
        constraint_repo=constraint_repo,
        logger=logger,
    )
    local_settings = LocalSettingsService(db=db, logger=logger)
    account_service = AccountService(account_repo=account_repo, db=db, logger=logger)
    sync_worker = SyncWorkerService(db=db, config=config, logger=logger)

    # ------------------------------------------------------------------
    # 3. Profile core
    # ------------------------------------------------------------------
    lifecycle = ProfileLifecycleService(
        account_repo=account_repo,
        profile_repo=profile_repo,
        policy=policy,
        db=db,
        config=config,
        logger=logger,
    )
    bootstrap = AccountBootstrapService(
        account_repo=account_repo,
        profile_repo=profile_repo,
        db=db,
        config=config,
        logger=logger,
    )
    migration = ProfileMigrationService(
        db=db,
        account_repo=account_repo,
        normalized_repo=normalized_repo,
        embedded_repo=embedded_repo,
        resource_repos=resource_repos,
        constraint_repo=constraint_repo,
        config=config,
        logger=logger,
    )
    synchronizer = SessionSynchronizer(
        account_repo=account_repo,
        profile_repo=profile_repo,
        lifecycle=lifecycle,
        local_settings=local_settings,
        config=config,
        logger=logger,
    )

    # ------------------------------------------------------------------
    # 4. Facades
    # ------------------------------------------------------------------
    profile_api = ProfileApi(
        session=session,
        lifecycle=lifecycle,
        policy=policy,
        synchronizer=synchronizer,
        logger=logger,
    )
    resource_service = ScopedResourceService(
        policy=policy,
        resource_repos=resource_repos,
        logger=logger,
    )

    return ServiceContainer(
        ownership_policy=policy,
        profile_lifecycle=lifecycle,
        account_bootstrap=bootstrap,
        migration=migration,
        session_synchronizer=synchronizer,
        profile_api=profile_api,
        account_service=account_service,
        resource_service=resource_service,
        local_settings=local_settings,
        sync_worker=sync_worker,
    )
