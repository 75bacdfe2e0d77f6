"""
Storage Backend Module

Document storage for transaction and account records. Each table maps a
record id to a JSON document; Decimal and datetime values travel as strings.
InMemoryStorage backs tests and the memory profile, SQLiteStorage gives a
single-file persistent store.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path


_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class StorageRecord:
    """Fields every persisted record carries"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Flatten to JSON-safe primitives"""
        return {key: _plain(value) for key, value in asdict(self).items()}


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _clone(document: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(document, default=str))


def _matches(document: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    # A filter on an absent key never matches, even when filtering for None
    return all(key in document and document[key] == expected for key, expected in filters.items())


class StorageInterface(ABC):
    """Contract shared by the storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Upsert a document"""

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Store a document only if record_id is unused. Returns whether it was stored."""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a document, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every document in a table"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a document. Returns whether it existed."""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents whose fields equal every filter value"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Number of documents in a table"""

    @abstractmethod
    def close(self) -> None:
        """Release backend resources"""


class InMemoryStorage(StorageInterface):
    """Dict-backed storage. Documents are copied in and out so callers never share state."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _clone(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                return False
            rows[record_id] = _clone(data)
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._table(table).get(record_id)
            return _clone(document) if document is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_clone(document) for document in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                _clone(document)
                for document in self._table(table).values()
                if _matches(document, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite document store.

    One connection is shared across threads and serialized by a lock, so
    insert() is a true insert-if-absent for concurrent callers. File
    databases run in WAL mode.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._known_tables = set()
        self._connection: Optional[sqlite3.Connection] = sqlite3.connect(
            self.db_path, check_same_thread=False
        )
        self._connection.row_factory = sqlite3.Row

        if self.db_path != ":memory:":
            with self._write() as conn:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Serialized unit of work, committed on success and rolled back on error"""
        with self._lock:
            if self._connection is None:
                raise RuntimeError(f"Storage {self.db_path} is closed")
            with self._connection:
                yield self._connection

    def _prepare(self, conn: sqlite3.Connection, table: str) -> None:
        if table in self._known_tables:
            return
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            " id TEXT PRIMARY KEY,"
            " data TEXT NOT NULL,"
            " created_at TEXT NOT NULL,"
            " updated_at TEXT NOT NULL)"
        )
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)")
        self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        with self._write() as conn:
            self._prepare(conn, table)
            conn.execute(
                f"INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                (record_id, json.dumps(data, default=str), stamp, stamp)
            )

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        stamp = datetime.now(timezone.utc).isoformat()
        with self._write() as conn:
            self._prepare(conn, table)
            cursor = conn.execute(
                f"INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (record_id, json.dumps(data, default=str), stamp, stamp)
            )
            return cursor.rowcount == 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._write() as conn:
            self._prepare(conn, table)
            row = conn.execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return json.loads(row["data"]) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._write() as conn:
            self._prepare(conn, table)
            rows = conn.execute(f"SELECT data FROM {table} ORDER BY created_at, rowid").fetchall()
        return [json.loads(row["data"]) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._write() as conn:
            self._prepare(conn, table)
            return conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,)).rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        # Filtering happens in Python so None and nested values compare like InMemoryStorage
        return [document for document in self.load_all(table) if _matches(document, filters)]

    def count(self, table: str) -> int:
        with self._write() as conn:
            self._prepare(conn, table)
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
