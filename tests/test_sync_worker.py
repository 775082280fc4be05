from __future__ import annotations

import json

import pytest

from profilehub.services.sync_worker import SyncWorkerService, attempts_recorded


class _FakeQuery:
    """Records a chained supabase-py call such as ``table().update().eq().execute()``."""

    def __init__(self, client: "_FakeSupabase", table: str) -> None:
        self._client = client
        self._call: list[object] = [table]

    def __getattr__(self, name):
        def _record(*args, **kwargs):
            self._call.append((name, args))
            return self

        return _record

    def execute(self):
        if self._client.fail_with is not None:
            raise self._client.fail_with
        if self._touches(self._client.failing_ids):
            raise RuntimeError("409 Conflict")
        self._client.calls.append(self._call)
        return self

    def _touches(self, ids: set[str]) -> bool:
        for _name, args in self._call[1:]:
            for arg in args:
                if isinstance(arg, dict) and arg.get("id") in ids:
                    return True
                if isinstance(arg, str) and arg in ids:
                    return True
        return False


class _FakeSupabase:
    def __init__(self) -> None:
        self.calls: list[list[object]] = []
        self.fail_with = None
        self.failing_ids: set[str] = set()

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)


@pytest.fixture()
def worker(db, config, logger):
    service = SyncWorkerService(db=db, config=config, logger=logger)
    yield service
    service.stop()


@pytest.fixture()
def online(db, monkeypatch):
    client = _FakeSupabase()
    monkeypatch.setattr(db, "_supabase", client)
    return client


def _queue(db, table, operation, entity_id, payload) -> int:
    cursor = db.sqlite.execute(
        "INSERT INTO sync_queue (table_name, operation, entity_id, payload) VALUES (?, ?, ?, ?)",
        (table, operation, entity_id, payload if isinstance(payload, str) else json.dumps(payload)),
    )
    db.sqlite.commit()
    return cursor.lastrowid


def _row(db, queue_id):
    row = db.sqlite.execute(
        "SELECT status, error_message FROM sync_queue WHERE id = ?", (queue_id,),
    ).fetchone()
    return row["status"], row["error_message"]


def test_offline_sync_now_does_nothing(worker, lifecycle, account, db):
    lifecycle.create(account.id, "Maths")
    pending = db.get_pending_sync_count()
    assert worker.sync_now() == 0
    assert db.get_pending_sync_count() == pending > 0


def test_queued_profile_writes_replayed_in_order(worker, lifecycle, account, db, online):
    lifecycle.create(account.id, "Maths")
    pending = db.get_pending_sync_count()

    assert worker.sync_now() == pending
    assert db.get_pending_sync_count() == 0
    tables = [call[0] for call in online.calls]
    assert tables.index("accounts") < tables.index("student_profiles")


def test_backfill_replayed_as_conditional_update(worker, db, online):
    _queue(db, "documents", "backfill", "acct-1", {"student_profile_id": "p-1"})

    assert worker.sync_now() == 1
    table, *steps = online.calls[0]
    assert table == "documents"
    assert steps == [
        ("update", ({"student_profile_id": "p-1"},)),
        ("eq", ("user_id", "acct-1")),
        ("is_", ("student_profile_id", "null")),
    ]


def test_backfill_without_profile_is_rejected(worker, db, online):
    queue_id = _queue(db, "documents", "backfill", "acct-1", {})
    assert worker.sync_now() == 0
    assert "student_profile_id" in _row(db, queue_id)[1]


def test_failed_entity_holds_back_its_later_rows(worker, db, online):
    online.failing_ids = {"p-1"}
    insert_p1 = _queue(db, "student_profiles", "insert", "p-1", {"id": "p-1"})
    update_p1 = _queue(db, "student_profiles", "update", "p-1", {"profile_name": "Renamed"})
    insert_p2 = _queue(db, "student_profiles", "insert", "p-2", {"id": "p-2"})

    assert worker.sync_now() == 1

    assert _row(db, insert_p1) == ("pending", "Attempt 1: 409 Conflict")
    assert _row(db, update_p1) == ("pending", None)
    assert _row(db, insert_p2)[0] == "synced"

    online.failing_ids = set()
    assert worker.sync_now() == 2
    assert [step[0] for step in online.calls[-1][1:]] == ["update", "eq"]


def test_failures_counted_then_permanent(worker, db, online, config):
    queue_id = _queue(db, "student_profiles", "update", "p-9", {"profile_name": "X"})
    online.fail_with = RuntimeError("503 Service Unavailable")

    for attempt in range(1, config.SYNC_MAX_ATTEMPTS):
        worker.sync_now()
        assert _row(db, queue_id) == ("pending", f"Attempt {attempt}: 503 Service Unavailable")

    worker.sync_now()
    assert _row(db, queue_id)[0] == "permanently_failed"


def test_malformed_payload_fails_permanently(worker, db, online):
    queue_id = _queue(db, "student_profiles", "insert", "p-bad", "{not json")
    assert worker.sync_now() == 0
    status, message = _row(db, queue_id)
    assert status == "permanently_failed"
    assert message.startswith("Attempt 1: Malformed JSON")


def test_disallowed_table_is_not_replayed(worker, db, online):
    queue_id = _queue(db, "app_settings", "insert", "k", {"key": "k"})
    worker.sync_now()
    assert online.calls == []
    assert "Disallowed" in _row(db, queue_id)[1]


@pytest.mark.parametrize("message, expected", [
    (None, 0),
    ("", 0),
    ("Attempt 3: timeout", 3),
    ("something else", 0),
])
def test_attempts_recorded(message, expected):
    assert attempts_recorded(message) == expected


def test_interval_grows_and_caps(worker, config):
    assert worker.next_interval() == config.SYNC_INTERVAL_S
    worker._consecutive_failures = 1
    assert worker.next_interval() == config.SYNC_INTERVAL_S * 2
    worker._consecutive_failures = 20
    assert worker.next_interval() == config.SYNC_MAX_INTERVAL_S


def test_start_and_stop(worker):
    worker.start()
    assert worker.is_running is True
    worker.stop()
    assert worker.is_running is False
