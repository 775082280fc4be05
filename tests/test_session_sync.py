from __future__ import annotations

import threading
import time
from datetime import datetime, timezone

import pytest

from conftest import ACCOUNT_ID, OTHER_ACCOUNT_ID
from profilehub.exceptions import NotFound, OwnershipDenied
from profilehub.models.account import Account
from profilehub.models.enums import ProfileStorageVersion, ResolutionSource
from profilehub.models.profile import Profile
from profilehub.services.session_resolution import resolve_active_profile
from profilehub.services.session_sync import SessionSynchronizer


def _profile(pid, last_accessed=None, created_day=1, active=True):
    created = datetime(2024, 1, created_day, tzinfo=timezone.utc)
    return Profile(
        id=pid,
        account_id=ACCOUNT_ID,
        profile_name=pid.upper(),
        created_at=created,
        updated_at=created,
        last_accessed_at=last_accessed,
        is_active=active,
    )


# ---------------------------------------------------------------------------
# Pure resolution rules
# ---------------------------------------------------------------------------

def test_local_pointer_wins():
    p1, p2 = _profile("p1"), _profile("p2")
    resolution = resolve_active_profile([p1, p2], stored_pointer="p1", server_pointer="p2")
    assert resolution.profile.id == "p1"
    assert resolution.source == ResolutionSource.LOCAL_POINTER
    assert not resolution.persist_local and not resolution.persist_server


def test_server_pointer_when_local_stale():
    p1, p2 = _profile("p1"), _profile("p2")
    resolution = resolve_active_profile([p1, p2], stored_pointer="gone", server_pointer="p2")
    assert resolution.profile.id == "p2"
    assert resolution.source == ResolutionSource.SERVER_POINTER
    assert resolution.persist_local and not resolution.persist_server


def test_most_recent_when_no_pointer_matches():
    p1 = _profile("p1")
    p2 = _profile("p2", last_accessed=datetime(2024, 1, 1, tzinfo=timezone.utc))
    resolution = resolve_active_profile([p1, p2], stored_pointer=None, server_pointer="gone")
    assert resolution.profile.id == "p2"
    assert resolution.source == ResolutionSource.MOST_RECENT
    assert resolution.persist_local and resolution.persist_server


def test_inactive_profile_never_selected():
    p1 = _profile("p1", active=False)
    p2 = _profile("p2")
    assert resolve_active_profile([p1, p2], "p1", "p1").profile.id == "p2"


def test_no_profiles_resolves_to_nothing():
    assert resolve_active_profile([], "p1", "p2").profile is None


# ---------------------------------------------------------------------------
# Synchronizer scenarios
# ---------------------------------------------------------------------------

def test_account_without_profiles_gets_one_named_after_owner(synchronizer, account, local_settings, account_repo):
    state = synchronizer.resolve(ACCOUNT_ID)

    assert state.is_degraded is False
    assert state.source == ResolutionSource.CREATED
    assert state.active_profile.profile_name == "Ada"
    assert [p.id for p in state.profiles] == [state.active_profile.id]
    assert local_settings.get_active_profile_id(ACCOUNT_ID) == state.active_profile.id
    assert account_repo.get_by_id(ACCOUNT_ID).server_active_profile_id == state.active_profile.id


def test_nameless_account_gets_fallback_name(synchronizer, account_repo, config):
    account_repo.insert(Account(id="acct-anon", email="anon@example.com"))
    state = synchronizer.resolve("acct-anon")
    assert state.active_profile.profile_name == config.FALLBACK_PROFILE_NAME


def test_most_recently_accessed_profile_selected(synchronizer, account, account_repo, normalized_repo):
    stored = account_repo.get_by_id(ACCOUNT_ID)
    p1 = _profile("p1", created_day=1)
    p2 = _profile("p2", created_day=2, last_accessed=datetime(2024, 1, 1, tzinfo=timezone.utc))
    normalized_repo.insert(stored, p1)
    normalized_repo.insert(stored, p2)

    state = synchronizer.resolve(ACCOUNT_ID)

    assert state.active_profile.id == "p2"
    assert state.source == ResolutionSource.MOST_RECENT


def test_selection_stamps_last_accessed(synchronizer, account, lifecycle, clock):
    profile = lifecycle.create(ACCOUNT_ID, "Maths")
    clock.advance(120)
    state = synchronizer.resolve(ACCOUNT_ID)
    assert state.active_profile.id == profile.id
    assert state.active_profile.last_accessed_at == clock()


def test_local_pointer_survives_restart(synchronizer, account, lifecycle, local_settings):
    lifecycle.create(ACCOUNT_ID, "First")
    second = lifecycle.create(ACCOUNT_ID, "Second")
    local_settings.set_active_profile_id(ACCOUNT_ID, second.id)

    state = synchronizer.resolve(ACCOUNT_ID)
    assert state.active_profile.id == second.id
    assert state.source == ResolutionSource.LOCAL_POINTER


def test_deleting_active_profile_falls_to_remaining(synchronizer, account, lifecycle, local_settings):
    p1 = lifecycle.create(ACCOUNT_ID, "P1")
    p2 = lifecycle.create(ACCOUNT_ID, "P2")
    synchronizer.resolve(ACCOUNT_ID)
    synchronizer.select_profile(p1.id)

    state = synchronizer.delete_profile(p1.id)

    assert state.active_profile.id == p2.id
    assert [p.id for p in state.profiles] == [p2.id]
    assert local_settings.get_active_profile_id(ACCOUNT_ID) == p2.id


def test_deleting_inactive_profile_keeps_selection(synchronizer, account, lifecycle):
    p1 = lifecycle.create(ACCOUNT_ID, "P1")
    p2 = lifecycle.create(ACCOUNT_ID, "P2")
    synchronizer.resolve(ACCOUNT_ID)
    synchronizer.select_profile(p1.id)

    state = synchronizer.delete_profile(p2.id)
    assert state.active_profile.id == p1.id
    assert [p.id for p in state.profiles] == [p1.id]


def test_select_foreign_profile_denied(synchronizer, account, other_account, lifecycle):
    lifecycle.create(ACCOUNT_ID, "Mine")
    theirs = lifecycle.create(OTHER_ACCOUNT_ID, "Theirs")
    synchronizer.resolve(ACCOUNT_ID)
    with pytest.raises(OwnershipDenied):
        synchronizer.select_profile(theirs.id)


def test_select_updates_both_pointers(synchronizer, account, lifecycle, local_settings, account_repo):
    lifecycle.create(ACCOUNT_ID, "P1")
    p2 = lifecycle.create(ACCOUNT_ID, "P2")
    synchronizer.resolve(ACCOUNT_ID)

    state = synchronizer.select_profile(p2.id)

    assert state.active_profile.id == p2.id
    assert local_settings.get_active_profile_id(ACCOUNT_ID) == p2.id
    assert account_repo.get_by_id(ACCOUNT_ID).server_active_profile_id == p2.id


def test_listeners_receive_states(synchronizer, account, lifecycle):
    lifecycle.create(ACCOUNT_ID, "P1")
    seen = []
    unsubscribe = synchronizer.subscribe(seen.append)

    synchronizer.resolve(ACCOUNT_ID)
    unsubscribe()
    synchronizer.refresh()

    assert len(seen) == 1
    assert seen[0].active_profile is not None


def test_sign_out_clears_local_pointer(synchronizer, account, lifecycle, local_settings):
    lifecycle.create(ACCOUNT_ID, "P1")
    synchronizer.resolve(ACCOUNT_ID)
    synchronizer.sign_out()

    assert local_settings.get_active_profile_id(ACCOUNT_ID) is None
    assert synchronizer.state.active_profile is None
    assert synchronizer.account_id is None


def test_profile_deleted_elsewhere_during_resolution(synchronizer, account, lifecycle, clock, monkeypatch):
    first = lifecycle.create(ACCOUNT_ID, "Maths")
    second = lifecycle.create(ACCOUNT_ID, "Art")
    clock.advance(60)
    lifecycle.switch_active(ACCOUNT_ID, second.id)
    original = lifecycle.switch_active

    def _deleted_on_other_device(account_id, profile_id):
        if profile_id == second.id:
            lifecycle.delete(account_id, second.id)
        return original(account_id, profile_id)

    monkeypatch.setattr(lifecycle, "switch_active", _deleted_on_other_device)

    state = synchronizer.resolve(ACCOUNT_ID)

    assert state.is_degraded is False
    assert state.active_profile.id == first.id
    assert [p.id for p in state.profiles] == [first.id]


# ---------------------------------------------------------------------------
# Embedded accounts
# ---------------------------------------------------------------------------

EMBEDDED_ID = "acct-embedded"


@pytest.fixture()
def embedded_account(account_repo):
    return account_repo.insert(Account(
        id=EMBEDDED_ID,
        email="emb@example.com",
        full_name="Emma Bedded",
        profile_storage_version=ProfileStorageVersion.EMBEDDED,
        preferences={
            "theme": "dark",
            "activeProfileId": "emb-2",
            "studentProfiles": [
                {
                    "id": "emb-1",
                    "profile_name": "Older",
                    "created_at": "2024-01-01T00:00:00+00:00",
                },
                {
                    "id": "emb-2",
                    "profile_name": "Younger",
                    "created_at": "2024-02-01T00:00:00+00:00",
                    "last_accessed_at": "2024-03-01T00:00:00+00:00",
                    "mascot": "owl",
                },
            ],
        },
    ))


def test_embedded_account_resolved_inside_preferences(
    synchronizer, embedded_account, account_repo, local_settings, clock, db,
):
    state = synchronizer.resolve(EMBEDDED_ID)

    assert state.is_degraded is False
    assert state.active_profile.id == "emb-2"
    assert state.source == ResolutionSource.SERVER_POINTER
    assert local_settings.get_active_profile_id(EMBEDDED_ID) == "emb-2"

    prefs = account_repo.get_by_id(EMBEDDED_ID).preferences
    assert prefs["theme"] == "dark"
    assert prefs["activeProfileId"] == "emb-2"
    entries = {e["id"]: e for e in prefs["studentProfiles"]}
    assert entries["emb-2"]["last_accessed_at"] == clock().isoformat()
    assert entries["emb-2"]["mascot"] == "owl"
    assert entries["emb-1"]["profile_name"] == "Older"

    row = db.sqlite.execute(
        "SELECT COUNT(*) AS cnt FROM student_profiles WHERE account_id = ?", (EMBEDDED_ID,),
    ).fetchone()
    assert row["cnt"] == 0


def test_missing_embedded_entry_not_retried(synchronizer, embedded_account, embedded_repo, config, clock):
    calls = []
    ghost = Profile(
        id="emb-ghost",
        account_id=EMBEDDED_ID,
        profile_name="Ghost",
        created_at=clock(),
        updated_at=clock(),
    )

    def _update():
        calls.append(ghost.id)
        return embedded_repo.update(embedded_account, ghost)

    assert config.STORE_MAX_ATTEMPTS > 1
    with pytest.raises(NotFound):
        synchronizer._call_bounded(_update, time.monotonic() + config.STORE_TIMEOUT_S, "update")
    assert calls == [ghost.id]


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------

@pytest.fixture()
def stalled_store(profile_repo, monkeypatch):
    """Blocks profile listing until ``release`` is set."""
    release = threading.Event()
    finished = threading.Event()
    original = profile_repo.list_for_account

    def _slow(account, include_inactive=False):
        release.wait(timeout=10)
        try:
            return original(account, include_inactive)
        finally:
            finished.set()

    monkeypatch.setattr(profile_repo, "list_for_account", _slow)
    yield release, finished
    release.set()
    finished.wait(timeout=5)


def _fast_synchronizer(synchronizer, config, timeout):
    return SessionSynchronizer(
        account_repo=synchronizer._account_repo,
        profile_repo=synchronizer._profile_repo,
        lifecycle=synchronizer._lifecycle,
        local_settings=synchronizer._local,
        config=config.model_copy(update={"STORE_TIMEOUT_S": timeout}),
        logger=synchronizer._logger,
        clock=synchronizer._clock,
    )


def test_timeout_yields_transient_profile(
    synchronizer, account, lifecycle, config, local_settings, account_repo, stalled_store,
):
    release, finished = stalled_store
    lifecycle.create(ACCOUNT_ID, "Maths")
    sync = _fast_synchronizer(synchronizer, config, timeout=0.3)

    started = time.monotonic()
    state = sync.resolve(ACCOUNT_ID)
    elapsed = time.monotonic() - started

    assert elapsed < 0.3 + 1.0
    assert state.is_degraded is True
    assert state.source == ResolutionSource.TRANSIENT
    assert state.active_profile.is_transient is True
    assert local_settings.get_active_profile_id(ACCOUNT_ID) is None
    assert account_repo.get_by_id(ACCOUNT_ID).server_active_profile_id is None

    release.set()
    assert finished.wait(timeout=5)

    recovered = sync.refresh()
    assert recovered.is_degraded is False
    assert recovered.active_profile.profile_name == "Maths"
    assert recovered.active_profile.is_transient is False


def test_transient_profile_never_serialized(synchronizer, config, account, stalled_store):
    sync = _fast_synchronizer(synchronizer, config, timeout=0.2)
    state = sync.resolve(ACCOUNT_ID)
    assert "is_transient" not in state.active_profile.model_dump()


def test_store_failure_degrades(synchronizer, account, account_repo, monkeypatch):
    def _boom(account_id):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(account_repo, "get_by_id", _boom)
    state = synchronizer.resolve(ACCOUNT_ID)

    assert state.is_degraded is True
    assert state.active_profile.is_transient is True
    assert "did not complete" in state.error


def test_recovery_thread_replaces_transient_state(synchronizer, account, lifecycle, account_repo, monkeypatch):
    lifecycle.create(ACCOUNT_ID, "Maths")
    original = account_repo.get_by_id
    healthy = threading.Event()

    def _flaky(account_id):
        if not healthy.is_set():
            raise RuntimeError("still offline")
        return original(account_id)

    monkeypatch.setattr(account_repo, "get_by_id", _flaky)
    assert synchronizer.resolve(ACCOUNT_ID).is_degraded is True

    recovered = threading.Event()
    synchronizer.subscribe(lambda state: recovered.set() if not state.is_degraded else None)
    synchronizer.start_recovery()
    healthy.set()

    assert recovered.wait(timeout=5)
    assert synchronizer.state.active_profile.profile_name == "Maths"
