from __future__ import annotations

import pytest

from conftest import ACCOUNT_ID, OTHER_ACCOUNT_ID
from profilehub.exceptions import NotFound, ValidationFailed
from profilehub.services import create_services
from profilehub.services.accounts import AccountService


@pytest.fixture()
def account_service(account_repo, db, logger):
    return AccountService(account_repo=account_repo, db=db, logger=logger)


def test_container_wires_every_service(db, config, session, logger):
    services = create_services(db, config, session, logger)
    assert set(services) == {
        "ownership_policy",
        "profile_lifecycle",
        "account_bootstrap",
        "migration",
        "session_synchronizer",
        "profile_api",
        "account_service",
        "resource_service",
        "local_settings",
        "sync_worker",
    }
    # The whole graph talks to the same store.
    result = services["account_bootstrap"].on_account_created("acct-wired", "w@example.com", "Wendy")
    assert services["ownership_policy"].is_owner("acct-wired", result.profile.id)


def test_account_update_merges_preferences(account_service, account, account_repo):
    account_repo.set_server_active_profile(ACCOUNT_ID, "p-1")
    updated = account_service.update_account(
        ACCOUNT_ID, {"full_name": "  Ada King ", "preferences": {"theme": "light"}},
    )
    assert updated.full_name == "Ada King"
    assert updated.preferences == {"activeProfileId": "p-1", "theme": "light"}


@pytest.mark.parametrize("field", ["role", "credits_remaining", "id"])
def test_account_update_rejects_privileged_fields(account_service, account, field):
    with pytest.raises(ValidationFailed):
        account_service.update_account(ACCOUNT_ID, {field: "admin"})


def test_account_update_unknown_account(account_service):
    with pytest.raises(NotFound):
        account_service.update_account("nobody", {"full_name": "X"})


def test_local_pointer_is_per_account(local_settings):
    local_settings.set_active_profile_id(ACCOUNT_ID, "p-ada")
    local_settings.set_active_profile_id(OTHER_ACCOUNT_ID, "p-bob")
    local_settings.clear_active_profile_id(OTHER_ACCOUNT_ID)

    assert local_settings.get_active_profile_id(ACCOUNT_ID) == "p-ada"
    assert local_settings.get_active_profile_id(OTHER_ACCOUNT_ID) is None


def test_installation_id_is_stable(local_settings):
    first = local_settings.get_installation_id()
    assert first
    assert local_settings.get_installation_id() == first
