from __future__ import annotations

from conftest import ACCOUNT_ID, OTHER_ACCOUNT_ID


def test_requires_signed_in_account(profile_api):
    result = profile_api.list_profiles()
    assert result.success is False
    assert result.status_code == 401
    assert profile_api.is_owner("anything") is False


def test_create_returns_201(profile_api, session, account):
    session.set_current_account(account)
    result = profile_api.create_profile("Maths")

    assert result.success is True
    assert result.status_code == 201
    assert result.data.profile_name == "Maths"
    assert profile_api.is_owner(result.data.id) is True


def test_validation_failure_maps_to_400(profile_api, session, account):
    session.set_current_account(account)
    profile_api.create_profile("Maths")
    result = profile_api.create_profile("MATHS")
    assert result.status_code == 400
    assert result.data is None


def test_foreign_profile_maps_to_403(profile_api, session, account, other_account, lifecycle):
    theirs = lifecycle.create(OTHER_ACCOUNT_ID, "Bob's")
    session.set_current_account(account)

    assert profile_api.switch_active(theirs.id).status_code == 403
    assert profile_api.update_profile(theirs.id, {"profile_name": "x"}).status_code == 403
    assert profile_api.delete_profile(theirs.id).status_code == 403
    assert profile_api.is_owner(theirs.id) is False


def test_unexpected_error_maps_to_500(profile_api, session, account, lifecycle, monkeypatch):
    def _boom(account_id):
        raise KeyError("boom")

    monkeypatch.setattr(lifecycle, "list_profiles", _boom)
    session.set_current_account(account)
    result = profile_api.list_profiles()
    assert result.status_code == 500
    assert "list_profiles" in result.error


def test_operations_route_through_active_session(profile_api, session, account, synchronizer):
    session.set_current_account(account)
    synchronizer.resolve(ACCOUNT_ID)

    created = profile_api.create_profile("Science").data
    assert created.id in {p.id for p in synchronizer.state.profiles}

    switched = profile_api.switch_active(created.id)
    assert switched.success is True
    assert synchronizer.state.active_profile.id == created.id

    assert profile_api.delete_profile(created.id).success is True
    assert synchronizer.state.active_profile.id != created.id
    assert synchronizer.state.is_degraded is False


def test_list_is_scoped_to_caller(profile_api, session, account, other_account, lifecycle):
    lifecycle.create(ACCOUNT_ID, "Mine")
    lifecycle.create(OTHER_ACCOUNT_ID, "Theirs")
    session.set_current_account(account)

    names = [p.profile_name for p in profile_api.list_profiles().data]
    assert names == ["Mine"]
