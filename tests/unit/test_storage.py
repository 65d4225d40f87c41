"""Unit tests for the authoritative record store."""

from __future__ import annotations

from pathlib import Path

import pytest

from plrsync.core.errors import StorageError
from plrsync.core.models import SyncStatus
from plrsync.core.storage import RecordStore

from tests.helpers import OWNER_A, OWNER_B, make_record, ts


def add_failing_trigger(store: RecordStore, bad_id: str) -> None:
    """Make any write of ``bad_id`` abort inside SQLite."""
    store._conn.execute(
        f"CREATE TRIGGER fail_{bad_id} BEFORE INSERT ON files "
        f"WHEN NEW.id = '{bad_id}' BEGIN SELECT RAISE(ABORT, 'injected failure'); END"
    )


class TestUpsert:
    """Test insert-or-replace writes."""

    def test_insert_and_get(self, record_store: RecordStore) -> None:
        record_store.upsert_records([make_record("f1", ts(1), user_id=OWNER_A)])
        stored = record_store.get_record("f1")
        assert stored is not None
        assert stored.user_id == OWNER_A
        assert stored.updated_at == ts(1)

    def test_replace_keeps_one_row(self, record_store: RecordStore) -> None:
        record_store.upsert_records([make_record("f1", ts(1), user_id=OWNER_A)])
        record_store.upsert_records([make_record("f1", ts(2), user_id=OWNER_A, name="v2")])
        assert record_store.count() == 1
        assert record_store.get_record("f1").name == "v2"

    def test_sync_status_not_persisted(self, record_store: RecordStore) -> None:
        record_store.upsert_records([
            make_record("f1", ts(1), user_id=OWNER_A, sync_status=SyncStatus.CONFLICT)
        ])
        assert record_store.get_record("f1").sync_status is None

    def test_tombstones_are_kept(self, record_store: RecordStore) -> None:
        record_store.upsert_records([make_record("f1", ts(2), user_id=OWNER_A, is_deleted=True)])
        stored = record_store.get_record("f1")
        assert stored.is_deleted is True
        assert record_store.count() == 1

    def test_requires_owner(self, record_store: RecordStore) -> None:
        with pytest.raises(StorageError):
            record_store.upsert_records([make_record("f1", ts(1))])
        assert record_store.count() == 0

    def test_failure_rolls_back_whole_batch(self, record_store: RecordStore) -> None:
        add_failing_trigger(record_store, "boom")
        batch = [
            make_record("ok1", ts(1), user_id=OWNER_A),
            make_record("ok2", ts(2), user_id=OWNER_A),
            make_record("boom", ts(3), user_id=OWNER_A),
        ]

        with pytest.raises(StorageError):
            record_store.upsert_records(batch)

        assert record_store.count() == 0
        assert record_store.get_records(["ok1", "ok2"]) == {}

    def test_failure_keeps_previous_versions(self, record_store: RecordStore) -> None:
        record_store.upsert_records([make_record("ok1", ts(1), user_id=OWNER_A, name="old")])
        add_failing_trigger(record_store, "boom")

        with pytest.raises(StorageError):
            record_store.upsert_records([
                make_record("ok1", ts(5), user_id=OWNER_A, name="new"),
                make_record("boom", ts(5), user_id=OWNER_A),
            ])

        assert record_store.get_record("ok1").name == "old"


class TestGetRecords:
    """Test lookups."""

    def test_missing(self, record_store: RecordStore) -> None:
        assert record_store.get_record("nope") is None
        assert record_store.get_records([]) == {}

    def test_many_ids(self, record_store: RecordStore) -> None:
        records = [make_record(f"f{i}", ts(i), user_id=OWNER_A) for i in range(1200)]
        record_store.upsert_records(records)
        found = record_store.get_records(r.id for r in records)
        assert len(found) == 1200


class TestGetChangesSince:
    """Test the change query."""

    def test_strictly_after_and_ascending(self, record_store: RecordStore) -> None:
        record_store.upsert_records([
            make_record("t3", ts(3), user_id=OWNER_A),
            make_record("t1", ts(1), user_id=OWNER_A),
            make_record("t2", ts(2), user_id=OWNER_A),
        ])

        changes = record_store.get_changes_since(OWNER_A, ts(1))
        assert [r.id for r in changes] == ["t2", "t3"]

    def test_only_owner_records(self, record_store: RecordStore) -> None:
        record_store.upsert_records([
            make_record("a", ts(1), user_id=OWNER_A),
            make_record("b", ts(2), user_id=OWNER_B),
        ])
        assert [r.id for r in record_store.get_changes_since(OWNER_B, ts(0))] == ["b"]

    def test_persists_across_reopen(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "records.db"
        store = RecordStore(db_path)
        store.upsert_records([make_record("f1", ts(1), user_id=OWNER_A)])
        store.close()

        reopened = RecordStore(db_path)
        try:
            assert reopened.get_record("f1") is not None
        finally:
            reopened.close()
