"""
Document Storage Module

Certificates and audit entries live in named tables behind StorageInterface,
with an in-memory backend for tests and a SQLite backend for persistence.
Records are JSON documents keyed by id; monetary values are stored as Decimal
strings.

Status changes go through update_where(), a single-statement conditional
update that only applies when the stored record still matches the expected
values. Multi-statement units of work use atomic().
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import copy
import sqlite3
import json
import logging
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageError

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(name: str) -> str:
    """Table and field names are interpolated into SQL, so restrict them"""
    if not _IDENTIFIER.match(name):
        raise StorageError(f"Invalid identifier: {name!r}")
    return name


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    """JSON round trip; detaches the stored copy from the caller's objects"""
    return json.loads(json.dumps(data, default=str))


@dataclass
class StorageRecord:
    """Id plus creation and modification timestamps shared by stored documents"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready dict: ISO timestamps, Decimals as strings"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Inverse of to_dict()"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class StorageInterface(ABC):
    """Table-of-documents contract implemented by every backend"""

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; fails if the id already exists"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one document by id, or None"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Optional[Dict[str, Any]] = None,
             order_by: Optional[str] = None, descending: bool = False,
             limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        """Find records matching all filters (equality), ordered and paged"""
        pass

    @abstractmethod
    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records matching filters"""
        pass

    @abstractmethod
    def update_where(self, table: str, record_id: str, expected: Dict[str, Any],
                     patch: Dict[str, Any]) -> int:
        """
        Merge patch into the record only if every expected field still holds.

        Returns:
            Number of records changed (0 or 1)
        """
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str,
               expected: Optional[Dict[str, Any]] = None) -> bool:
        """Delete a record, optionally conditioned on expected field values"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Drop every document in a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release backend resources"""
        pass

    def begin_transaction(self) -> None:
        """Open a unit of work"""
        pass

    def commit(self) -> None:
        """Make the open unit of work durable"""
        pass

    def rollback(self) -> None:
        """Discard the open unit of work"""
        pass

    @contextmanager
    def atomic(self):
        """Run the enclosed block as one unit of work; joins an outer one if open"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    A transaction holds the storage lock for its whole duration and keeps a
    snapshot of the data to restore on rollback.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshots: List[Dict[str, Dict[str, Dict[str, Any]]]] = []

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _matches(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
        if not filters:
            return True
        return all(record.get(key) == value for key, value in filters.items())

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                raise StorageError(f"Record {record_id} already exists in {table}")
            rows[record_id] = _normalize(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def find(self, table: str, filters: Optional[Dict[str, Any]] = None,
             order_by: Optional[str] = None, descending: bool = False,
             limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        with self._lock:
            results = [
                record for record in self._table(table).values()
                if self._matches(record, filters)
            ]
            if order_by:
                results.sort(
                    key=lambda r: (r.get(order_by) is None, r.get(order_by), r.get('id')),
                    reverse=descending
                )
            results = results[offset:]
            if limit is not None:
                results = results[:limit]
            return copy.deepcopy(results)

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            return sum(1 for record in self._table(table).values()
                       if self._matches(record, filters))

    def update_where(self, table: str, record_id: str, expected: Dict[str, Any],
                     patch: Dict[str, Any]) -> int:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is None or not self._matches(record, expected):
                return 0
            record.update(_normalize(patch))
            return 1

    def delete(self, table: str, record_id: str,
               expected: Optional[Dict[str, Any]] = None) -> bool:
        with self._lock:
            rows = self._table(table)
            record = rows.get(record_id)
            if record is None or not self._matches(record, expected):
                return False
            del rows[record_id]
            return True

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Nothing to release in memory"""
        pass

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._snapshots.append(copy.deepcopy(self._data))

    def commit(self) -> None:
        if not self._snapshots:
            return
        self._snapshots.pop()
        self._lock.release()

    def rollback(self) -> None:
        if not self._snapshots:
            return
        self._data = self._snapshots.pop()
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Each table holds (id, data JSON, created_at, updated_at). Filters and
    conditional updates run on the JSON document through json_extract() and
    json_patch(), so a status check and its write are a single statement.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        try:
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open SQLite database {self.db_path}: {exc}") from exc
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        # WAL lets readers proceed during a write
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    def _conn(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StorageError("Storage is closed")
        return self._connection

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._conn().execute(sql, params)
        except sqlite3.Error as exc:
            raise StorageError(f"SQLite error: {exc}") from exc

    def _autocommit(self) -> None:
        # Autocommit outside atomic()
        if not self._in_transaction:
            try:
                self._conn().commit()
            except sqlite3.Error as exc:
                raise StorageError(f"SQLite commit failed: {exc}") from exc

    def _ensure_table(self, table: str) -> None:
        """Create the document table and its created_at index on first use"""
        if table in self._tables:
            return
        _check_identifier(table)
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._autocommit()
        self._tables.add(table)

    @staticmethod
    def _where(filters: Optional[Dict[str, Any]]) -> Tuple[str, list]:
        """Build a WHERE clause over JSON fields"""
        conditions = []
        params = []
        for key, value in (filters or {}).items():
            path = f"$.{_check_identifier(key)}"
            if value is None:
                conditions.append("json_extract(data, ?) IS NULL")
                params.append(path)
            else:
                conditions.append("json_extract(data, ?) = ?")
                params.extend([path, value])
        return " AND ".join(conditions), params

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._conn().execute(
                    f"INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (record_id, json.dumps(data, default=str), now, now)
                )
            except sqlite3.IntegrityError as exc:
                raise StorageError(f"Record {record_id} already exists in {table}") from exc
            except sqlite3.Error as exc:
                raise StorageError(f"SQLite error: {exc}") from exc
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def find(self, table: str, filters: Optional[Dict[str, Any]] = None,
             order_by: Optional[str] = None, descending: bool = False,
             limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(filters)
            sql = f"SELECT data FROM {table}"
            if where:
                sql += f" WHERE {where}"
            direction = "DESC" if descending else "ASC"
            if order_by:
                sql += f" ORDER BY json_extract(data, ?) {direction}, id {direction}"
                params.append(f"$.{_check_identifier(order_by)}")
            else:
                sql += " ORDER BY created_at, id"
            if limit is not None or offset:
                sql += " LIMIT ? OFFSET ?"
                params.extend([limit if limit is not None else -1, offset])
            rows = self._execute(sql, tuple(params)).fetchall()
            return [json.loads(row['data']) for row in rows]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(filters)
            sql = f"SELECT COUNT(*) AS count FROM {table}"
            if where:
                sql += f" WHERE {where}"
            return self._execute(sql, tuple(params)).fetchone()['count']

    def update_where(self, table: str, record_id: str, expected: Dict[str, Any],
                     patch: Dict[str, Any]) -> int:
        # json_patch follows RFC 7396: a None value removes the key
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(expected)
            sql = f"UPDATE {table} SET data = json_patch(data, ?), updated_at = ? WHERE id = ?"
            if where:
                sql += f" AND {where}"
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._execute(
                sql, tuple([json.dumps(patch, default=str), now, record_id] + params)
            )
            self._autocommit()
            return cursor.rowcount

    def delete(self, table: str, record_id: str,
               expected: Optional[Dict[str, Any]] = None) -> bool:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(expected)
            sql = f"DELETE FROM {table} WHERE id = ?"
            if where:
                sql += f" AND {where}"
            cursor = self._execute(sql, tuple([record_id] + params))
            self._autocommit()
            return cursor.rowcount > 0

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        """Start a transaction; nested calls join the outer one"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        if not self._in_transaction:
            return
        self._depth -= 1
        try:
            if self._depth == 0:
                self._conn().commit()
        except sqlite3.Error as exc:
            raise StorageError(f"SQLite commit failed: {exc}") from exc
        finally:
            self._lock.release()

    def rollback(self) -> None:
        if not self._in_transaction:
            return
        self._depth -= 1
        try:
            if self._depth == 0:
                self._conn().rollback()
        except sqlite3.Error as exc:
            raise StorageError(f"SQLite rollback failed: {exc}") from exc
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close the connection; safe to call twice"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str = "memory", database_path: str = ":memory:") -> StorageInterface:
    """Create a storage backend by name"""
    backend = backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        logger.info(f"Using SQLite storage at {database_path}")
        return SQLiteStorage(database_path)
    raise ValueError(f"Unknown storage backend '{backend}'")
