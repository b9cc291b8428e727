"""
Tests for storage backends, version checks and transaction support
"""

import pytest
import tempfile
import os
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal

from loan_engine.exceptions import StaleRecordError
from loan_engine.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)


# Test data
test_data = {
    "id": "loan_001",
    "borrower_id": "borrower-1",
    "status": "pending",
    "remaining_balance": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each test runs against both backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestStorageOperations:
    """Test basic CRUD operations"""

    def test_save_and_load(self, storage):
        version = storage.save("loans", "loan_001", test_data)
        loaded = storage.load("loans", "loan_001")

        assert version == 1
        assert loaded["version"] == 1
        assert {k: v for k, v in loaded.items() if k != "version"} == test_data

    def test_load_missing(self, storage):
        assert storage.load("loans", "missing") is None
        assert not storage.exists("loans", "missing")

    def test_loaded_record_is_a_copy(self, storage):
        storage.save("loans", "loan_001", test_data)
        loaded = storage.load("loans", "loan_001")
        loaded["status"] = "active"

        assert storage.load("loans", "loan_001")["status"] == "pending"

    def test_load_all_count_delete(self, storage):
        storage.save("loans", "loan_001", test_data)
        storage.save("loans", "loan_002", {**test_data, "id": "loan_002"})

        assert len(storage.load_all("loans")) == 2
        assert storage.count("loans") == 2

        assert storage.delete("loans", "loan_001")
        assert not storage.delete("loans", "loan_001")
        assert storage.count("loans") == 1

    def test_find_by_equality(self, storage):
        storage.save("loans", "loan_001", test_data)
        storage.save("loans", "loan_002", {**test_data, "id": "loan_002", "status": "active"})
        storage.save("loans", "loan_003", {**test_data, "id": "loan_003", "borrower_id": "borrower-2"})

        active = storage.find("loans", {"status": "active"})
        mine = storage.find("loans", {"borrower_id": "borrower-1", "status": "pending"})

        assert [r["id"] for r in active] == ["loan_002"]
        assert [r["id"] for r in mine] == ["loan_001"]
        assert storage.find("loans", {"no_such_key": "x"}) == []

    def test_clear_table(self, storage):
        storage.save("loans", "loan_001", test_data)
        storage.clear_table("loans")
        assert storage.count("loans") == 0

    def test_empty_table(self, storage):
        assert storage.load_all("never_written") == []
        assert storage.count("never_written") == 0


class TestVersionChecks:
    """Test compare-and-set saves"""

    def test_version_increments(self, storage):
        assert storage.save("loans", "loan_001", test_data) == 1
        assert storage.save("loans", "loan_001", test_data) == 2
        assert storage.save("loans", "loan_001", test_data, expected_version=2) == 3

    def test_stale_version_rejected(self, storage):
        storage.save("loans", "loan_001", test_data)
        storage.save("loans", "loan_001", {**test_data, "status": "approved"}, expected_version=1)

        with pytest.raises(StaleRecordError):
            storage.save("loans", "loan_001", {**test_data, "status": "rejected"}, expected_version=1)

        assert storage.load("loans", "loan_001")["status"] == "approved"

    def test_version_zero_means_new(self, storage):
        storage.save("loans", "loan_001", test_data, expected_version=0)

        with pytest.raises(StaleRecordError):
            storage.save("loans", "loan_001", test_data, expected_version=0)


class TestTransactionSupport:
    """Test atomic operations"""

    def test_sqlite_atomic_commit(self):
        storage = SQLiteStorage(":memory:")
        with storage.atomic():
            storage.save("loans", "loan_001", test_data)
            storage.save("audit_events", "event_001", {"id": "event_001", "sequence": 1})

        assert storage.exists("loans", "loan_001")
        assert storage.exists("audit_events", "event_001")
        storage.close()

    def test_sqlite_atomic_rollback(self):
        storage = SQLiteStorage(":memory:")
        storage.save("loans", "loan_001", test_data)

        with pytest.raises(StaleRecordError):
            with storage.atomic():
                storage.save("loans", "loan_001", {**test_data, "status": "approved"}, expected_version=1)
                storage.save("loans", "loan_001", {**test_data, "status": "rejected"}, expected_version=1)

        loaded = storage.load("loans", "loan_001")
        assert loaded["status"] == "pending"
        assert loaded["version"] == 1
        storage.close()

    def test_sqlite_nested_atomic_rolls_back_outer_block(self):
        storage = SQLiteStorage(":memory:")
        storage.save("loans", "loan_000", test_data)

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("loans", "loan_001", test_data)
                with storage.atomic():
                    storage.save("loans", "loan_002", test_data)
                raise RuntimeError("boom")

        assert storage.count("loans") == 1
        assert not storage.exists("loans", "loan_002")
        storage.close()

    def test_in_memory_atomic_context_manager(self):
        storage = InMemoryStorage()
        with storage.atomic():
            storage.save("loans", "loan_001", test_data)
        assert storage.exists("loans", "loan_001")

    def test_in_memory_atomic_rollback(self):
        storage = InMemoryStorage()
        storage.save("loans", "loan_001", test_data)

        with pytest.raises(StaleRecordError):
            with storage.atomic():
                storage.save("loans", "loan_001", {**test_data, "status": "approved"}, expected_version=1)
                storage.save("audit_events", "event_001", {"id": "event_001", "sequence": 1})
                storage.save("loans", "loan_001", {**test_data, "status": "rejected"}, expected_version=1)

        loaded = storage.load("loans", "loan_001")
        assert loaded["status"] == "pending"
        assert loaded["version"] == 1
        assert not storage.exists("audit_events", "event_001")

    def test_in_memory_nested_atomic_rolls_back_outer_block(self):
        storage = InMemoryStorage()

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("loans", "loan_001", test_data)
                with storage.atomic():
                    storage.save("loans", "loan_002", test_data)
                raise RuntimeError("boom")

        assert storage.count("loans") == 0
        writer = threading.Thread(target=storage.save, args=("loans", "loan_003", test_data))
        writer.start()
        writer.join(timeout=5)
        assert storage.exists("loans", "loan_003")


class TestSQLitePersistence:
    """Test that SQLite data survives reopening"""

    def test_reopen_file_database(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "loans.db")

            storage = SQLiteStorage(path)
            storage.save("loans", "loan_001", test_data)
            storage.close()

            reopened = SQLiteStorage(path)
            assert reopened.load("loans", "loan_001")["borrower_id"] == "borrower-1"
            assert reopened.save("loans", "loan_001", test_data, expected_version=1) == 2
            reopened.close()


class TestStorageRecord:
    """Test StorageRecord serialization"""

    def test_storage_record_serialization(self):
        @dataclass
        class SampleRecord(StorageRecord):
            amount: Decimal

        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        record = SampleRecord(id="r1", created_at=now, updated_at=now, amount=Decimal('12.50'))

        assert record.to_dict() == {
            "id": "r1",
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            "amount": "12.50"
        }


class TestCreateStorage:
    """Test backend selection from a database URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_sqlite_file_url(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "loans.db")
            storage = create_storage(f"sqlite:///{path}")
            assert storage.db_path == path
            storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("postgresql://localhost/loans")
