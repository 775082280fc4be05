from __future__ import annotations

import json
import sqlite3
from types import SimpleNamespace

import pytest

from conftest import ACCOUNT_ID
from profilehub.models.account import Account
from profilehub.models.enums import ProfileStorageVersion, TableMigrationStatus
from profilehub.schema import RESOURCE_TABLES, column_is_not_null

EMBEDDED_ID = "acct-legacy"


@pytest.fixture()
def embedded_account(account_repo):
    return account_repo.insert(Account(
        id=EMBEDDED_ID,
        email="legacy@example.com",
        full_name="Lin Legacy",
        profile_storage_version=ProfileStorageVersion.EMBEDDED,
        preferences={
            "theme": "dark",
            "activeProfileId": "emb-2",
            "studentProfiles": [
                {
                    "id": "emb-1",
                    "profile_name": "Older",
                    "profile_color": "#10b981",
                    "created_at": "2024-01-01T00:00:00+00:00",
                    "last_accessed_at": None,
                },
                {
                    "id": "emb-2",
                    "profile_name": "Younger",
                    "profile_color": "#ef4444",
                    "created_at": "2024-02-01T00:00:00+00:00",
                    "last_accessed_at": "2024-03-01T00:00:00+00:00",
                    "mascot": "owl",
                },
            ],
        },
    ))


def _insert_legacy_row(db, table, row_id, user_id, profile_id=None):
    db.sqlite.execute(
        f"INSERT INTO {table} (id, user_id, student_profile_id, payload) VALUES (?, ?, ?, ?)",
        (row_id, user_id, profile_id, json.dumps({"seed": row_id})),
    )
    db.sqlite.commit()


def _profile_ref(db, table, row_id):
    row = db.sqlite.execute(
        f"SELECT student_profile_id FROM {table} WHERE id = ?", (row_id,),
    ).fetchone()
    return row["student_profile_id"]


def _statuses(report):
    return {t.table: t.status for t in report.tables}


def test_embedded_profiles_promoted_with_ids(migration, embedded_account, account_repo, normalized_repo):
    report = migration.run()

    assert report.profiles_promoted == 2
    account = account_repo.get_by_id(EMBEDDED_ID)
    assert account.profile_storage_version == ProfileStorageVersion.NORMALIZED
    assert "studentProfiles" not in account.preferences
    assert account.preferences["theme"] == "dark"
    assert account.preferences["activeProfileId"] == "emb-2"

    profiles = {p.id: p for p in normalized_repo.list_for_account(account)}
    assert set(profiles) == {"emb-1", "emb-2"}
    assert profiles["emb-2"].profile_name == "Younger"
    assert profiles["emb-2"].last_accessed_at is not None


def test_backfill_targets_server_pointer_profile(migration, embedded_account, db):
    _insert_legacy_row(db, "documents", "doc-1", EMBEDDED_ID)
    _insert_legacy_row(db, "folders", "fold-1", EMBEDDED_ID)

    report = migration.run()

    assert _profile_ref(db, "documents", "doc-1") == "emb-2"
    assert _profile_ref(db, "folders", "fold-1") == "emb-2"
    assert report.rows_backfilled["documents"] == 1
    assert report.rows_backfilled["folders"] == 1


def test_backfill_uses_oldest_profile_without_pointer(migration, account, lifecycle, clock, db):
    first = lifecycle.create(ACCOUNT_ID, "First")
    clock.advance(60)
    lifecycle.create(ACCOUNT_ID, "Second")
    _insert_legacy_row(db, "notifications", "n-1", ACCOUNT_ID)

    migration.run()
    assert _profile_ref(db, "notifications", "n-1") == first.id


def test_rows_with_profile_ref_untouched(migration, account, lifecycle, clock, db):
    first = lifecycle.create(ACCOUNT_ID, "First")
    clock.advance(60)
    second = lifecycle.create(ACCOUNT_ID, "Second")
    _insert_legacy_row(db, "documents", "doc-2", ACCOUNT_ID, second.id)

    migration.run()
    assert _profile_ref(db, "documents", "doc-2") == second.id
    assert first.id != second.id


def test_account_without_profiles_gets_default(migration, account, profile_repo, account_repo, config, db):
    _insert_legacy_row(db, "tts_requests", "tts-1", ACCOUNT_ID)

    report = migration.run()

    profiles = profile_repo.list_for_account(account_repo.get_by_id(ACCOUNT_ID))
    assert [p.profile_name for p in profiles] == [config.DEFAULT_PROFILE_NAME]
    assert report.default_profiles_created == 1
    assert _profile_ref(db, "tts_requests", "tts-1") == profiles[0].id


def test_every_table_tightened_when_clean(migration, account, embedded_account, db, policy):
    _insert_legacy_row(db, "documents", "doc-1", ACCOUNT_ID)

    report = migration.run()

    assert report.complete is True
    assert set(_statuses(report).values()) == {TableMigrationStatus.TIGHTENED}
    for table in RESOURCE_TABLES:
        assert column_is_not_null(db.sqlite, table, "student_profile_id")
        assert policy.legacy_window_open(table) is False
    # Data survived the table rebuild.
    assert _profile_ref(db, "documents", "doc-1") is not None


def test_tightened_table_rejects_null_profile_ref(migration, account, db):
    migration.run()
    with pytest.raises(sqlite3.IntegrityError):
        _insert_legacy_row(db, "documents", "doc-x", ACCOUNT_ID)
    db.sqlite.rollback()


def test_unattributable_rows_skip_tightening(migration, account, db):
    _insert_legacy_row(db, "documents", "ghost-doc", "ghost-account")

    report = migration.run()

    statuses = _statuses(report)
    assert statuses["documents"] == TableMigrationStatus.SKIPPED_NULL_REFS
    assert statuses["folders"] == TableMigrationStatus.TIGHTENED
    assert report.complete is False
    assert not column_is_not_null(db.sqlite, "documents", "student_profile_id")
    assert _profile_ref(db, "documents", "ghost-doc") is None


def test_orphan_refs_skip_tightening(migration, account, db):
    _insert_legacy_row(db, "document_texts", "txt-1", ACCOUNT_ID, "no-such-profile")

    report = migration.run()

    table_report = next(t for t in report.tables if t.table == "document_texts")
    assert table_report.status == TableMigrationStatus.SKIPPED_NULL_REFS
    assert table_report.orphan_count == 1


def test_rerun_is_a_no_op(migration, account, embedded_account, db, normalized_repo, account_repo):
    _insert_legacy_row(db, "documents", "doc-1", EMBEDDED_ID)
    migration.run()
    before = {
        p.id for p in normalized_repo.list_for_account(account_repo.get_by_id(EMBEDDED_ID), include_inactive=True)
    }

    again = migration.run()

    assert again.profiles_promoted == 0
    assert again.default_profiles_created == 0
    assert sum(again.rows_backfilled.values()) == 0
    assert set(_statuses(again).values()) == {TableMigrationStatus.ALREADY_TIGHTENED}
    after = {
        p.id for p in normalized_repo.list_for_account(account_repo.get_by_id(EMBEDDED_ID), include_inactive=True)
    }
    assert before == after


def test_embedded_name_collisions_are_resolved(migration, account_repo, normalized_repo):
    account_repo.insert(Account(
        id=EMBEDDED_ID,
        profile_storage_version=ProfileStorageVersion.EMBEDDED,
        preferences={
            "studentProfiles": [
                {"id": "dup-1", "profile_name": "Kid", "created_at": "2024-01-01T00:00:00+00:00"},
                {"id": "dup-2", "profile_name": "kid", "created_at": "2024-01-02T00:00:00+00:00"},
                {"id": "blank", "profile_name": "   ", "created_at": "2024-01-03T00:00:00+00:00"},
            ],
        },
    ))

    report = migration.run()

    assert report.profiles_promoted == 3
    names = sorted(
        p.profile_name for p in normalized_repo.list_for_account(account_repo.get_by_id(EMBEDDED_ID))
    )
    assert names == ["Kid", "Student", "kid 2"]


def test_failing_account_is_rolled_back_and_reported(
    migration, account, embedded_account, resource_repos, db, account_repo, monkeypatch,
):
    original = resource_repos["folders"].backfill

    def _flaky(account_id, profile_id):
        if account_id == EMBEDDED_ID:
            raise RuntimeError("backfill exploded")
        return original(account_id, profile_id)

    monkeypatch.setattr(resource_repos["folders"], "backfill", _flaky)
    _insert_legacy_row(db, "documents", "doc-1", EMBEDDED_ID)

    report = migration.run()

    assert report.accounts_failed == [EMBEDDED_ID]
    assert report.accounts_processed == 1
    # Nothing of the failed account's transaction survived.
    legacy = account_repo.get_by_id(EMBEDDED_ID)
    assert legacy.profile_storage_version == ProfileStorageVersion.EMBEDDED
    assert "studentProfiles" in legacy.preferences
    assert _profile_ref(db, "documents", "doc-1") is None
    assert report.complete is False


class _ServerQuery:
    def __init__(self, rows):
        self._rows = list(rows)
        self._single = False

    def select(self, *_columns):
        return self

    def eq(self, column, value):
        self._rows = [r for r in self._rows if r.get(column) == value]
        return self

    def order(self, *_args, **_kwargs):
        return self

    def maybe_single(self):
        self._single = True
        return self

    def execute(self):
        if self._single:
            return SimpleNamespace(data=self._rows[0] if self._rows else None)
        return SimpleNamespace(data=list(self._rows))


class _ReadOnlyServer:
    """Serves fixed rows per table and still knows nothing of queued writes."""

    def __init__(self, tables):
        self._tables = tables

    def table(self, name):
        return _ServerQuery(self._tables.get(name, []))


def test_migration_with_server_attached_uses_its_own_writes(
    migration, embedded_account, db, monkeypatch,
):
    _insert_legacy_row(db, "documents", "doc-1", EMBEDDED_ID)
    monkeypatch.setattr(db, "_supabase", _ReadOnlyServer({
        "accounts": [embedded_account.model_dump(mode="json")],
        "student_profiles": [],
    }))

    first = migration.run()

    assert first.accounts_failed == []
    assert first.profiles_promoted == 2
    assert first.default_profiles_created == 0
    assert _profile_ref(db, "documents", "doc-1") == "emb-2"
    names = {
        row["profile_name"]
        for row in db.sqlite.execute(
            "SELECT profile_name FROM student_profiles WHERE account_id = ?", (EMBEDDED_ID,),
        )
    }
    assert names == {"Older", "Younger"}

    second = migration.run()

    assert second.accounts_failed == []
    assert second.profiles_promoted == 0
    assert second.default_profiles_created == 0
    assert second.complete is True
