"""
Storage Backend Module

Provides the abstract storage interface the loan engine persists through, with
in-memory (testing) and SQLite (persistence) implementations. Records are JSON
documents; monetary values are stored as Decimal strings.

Every saved record carries a ``version`` counter. Passing ``expected_version``
to ``save`` turns the write into a compare-and-set, so two writers that loaded
the same record cannot both commit a read-modify-write.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import StaleRecordError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any],
             expected_version: Optional[int] = None) -> int:
        """
        Save a record and return its new version

        Raises:
            StaleRecordError: If expected_version is given and does not match
                the stored version (0 means "must not exist yet")
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level keys equal the filter values"""
        pass

    def latest(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        """Record with the highest value of a numeric top-level key, None if there is none"""
        records = [record for record in self.load_all(table) if key in record]
        return max(records, key=lambda record: record[key], default=None)

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise

    @staticmethod
    def _next_version(table: str, record_id: str, current_version: Optional[int],
                      expected_version: Optional[int]) -> int:
        stored = current_version or 0
        if expected_version is not None and stored != expected_version:
            raise StaleRecordError(
                f"{table}/{record_id} is at version {stored}, expected {expected_version}"
            )
        return stored + 1

    @staticmethod
    def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        return all(key in record and record[key] == value for key, value in filters.items())


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             expected_version: Optional[int] = None) -> int:
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            version = self._next_version(
                table, record_id, current.get('version') if current else None, expected_version
            )
            # Deep copy to prevent external mutation
            record = json.loads(json.dumps(data, default=str))
            record['version'] = version
            self._data[table][record_id] = record
            return version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return self._data[table].pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if self._matches(record, filters)
            ]

    def latest(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = max(
                (r for r in self._data[table].values() if key in r),
                key=lambda r: r[key],
                default=None
            )
            return json.loads(json.dumps(record)) if record is not None else None

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        # Held until commit or rollback, so other threads see no partial writes
        self._lock.acquire()
        self._depth += 1
        if self._depth == 1:
            # Saves replace record dicts rather than mutating them
            self._snapshot = {table: dict(records) for table, records in self._data.items()}

    def commit(self) -> None:
        self._end_transaction(restore=False)

    def rollback(self) -> None:
        self._end_transaction(restore=True)

    def _end_transaction(self, restore: bool) -> None:
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                if restore:
                    self._data = self._snapshot
                self._snapshot = None
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()
        self._indexes = set()
        self._depth = 0

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _commit_unless_in_transaction(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._commit_unless_in_transaction()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             expected_version: Optional[int] = None) -> int:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT version FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            version = self._next_version(
                table, record_id, row['version'] if row else None, expected_version
            )

            record = dict(data)
            record['version'] = version
            now = datetime.now(timezone.utc).isoformat()

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(record, default=str), version, record_id, now, now))

            self._commit_unless_in_transaction()
            return version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at")
            records = (json.loads(row['data']) for row in cursor.fetchall())
            return [record for record in records if self._matches(record, filters)]

    def _ensure_key_index(self, table: str, key: str) -> None:
        index = f"idx_{table}_{key}"
        if index in self._indexes:
            return
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS {index}
            ON {table}(json_extract(data, '$.{key}'))
        """)
        self._commit_unless_in_transaction()
        self._indexes.add(index)

    def latest(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        """Highest value of ``key`` via an expression index on the JSON field"""
        with self._lock:
            self._ensure_table(table)
            self._ensure_key_index(table, key)
            row = self._connection.execute(f"""
                SELECT data FROM {table}
                WHERE json_extract(data, '$.{key}') IS NOT NULL
                ORDER BY json_extract(data, '$.{key}') DESC
                LIMIT 1
            """).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._commit_unless_in_transaction()

    def begin_transaction(self) -> None:
        # Held until commit or rollback, so other threads cannot write into this transaction
        self._lock.acquire()
        self._depth += 1
        # isolation_level='DEFERRED' opens the transaction on the first write
        self._in_transaction = True

    def commit(self) -> None:
        self._end_transaction(self._connection.commit)

    def rollback(self) -> None:
        self._end_transaction(self._discard)

    def _discard(self) -> None:
        self._connection.rollback()
        # Tables and indexes created inside the transaction are gone too
        self._tables.clear()
        self._indexes.clear()

    def _end_transaction(self, finish: Callable[[], None]) -> None:
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._in_transaction = False
                finish()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite://`` alone opens an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
