"""
Storage Backend Module

Records are kept as JSON documents keyed by id, one table per record type
(loans, emi_schedules, emi_payments, lendings, ...). Money is stored as
decimal strings, never floats. Two backends share the interface: an
in-memory one for tests and SQLite for the running service.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import copy
import sqlite3
import json
import threading
import logging
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager


logger = logging.getLogger("emi_engine.storage")

Document = Dict[str, Any]


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Base fields as JSON-safe values; subclasses add their own"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @staticmethod
    def base_fields(data: Dict[str, Any]) -> Dict[str, Any]:
        """Parse the base fields back out of a stored dictionary"""
        created_at = data['created_at']
        updated_at = data['updated_at']
        return {
            'id': data['id'],
            'created_at': datetime.fromisoformat(created_at) if isinstance(created_at, str) else created_at,
            'updated_at': datetime.fromisoformat(updated_at) if isinstance(updated_at, str) else updated_at,
        }


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _to_json(document: Document) -> str:
    return json.dumps(document, default=_encode)


def _matches(document: Document, filters: Dict[str, Any]) -> bool:
    return all(key in document and document[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """
    Document store used by the repository and the audit trail.

    ``atomic()`` groups writes: the backend lock is held for the whole block
    and everything written inside it is undone if the block raises.
    """

    _lock: threading.RLock
    _in_transaction: bool = False

    @abstractmethod
    def save(self, table: str, record_id: str, data: Document) -> None:
        """Insert or replace one document"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Document]:
        """The document stored under ``record_id``, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Document]:
        """Every document in the table, oldest first"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove one document; False if it was not there"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Document]:
        """Documents whose top-level fields equal every value in ``filters``"""

    @abstractmethod
    def close(self) -> None:
        pass

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every document matching filters, returning how many went"""
        with self._lock:
            return sum(1 for document in self.find(table, filters)
                       if self.delete(table, document['id']))

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """
        Run the block as one transaction.

        The storage lock is held for the whole block so that a rollback can
        never discard writes made by another thread. Nested blocks join the
        outermost transaction.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise


class InMemoryStorage(StorageInterface):
    """
    Dict-of-dicts backend for tests.

    Documents go in and come out as JSON round-trips, so callers never share
    mutable state with the store. A transaction snapshots every table and
    restores the snapshot on rollback.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._in_transaction = False
        self._snapshot: Optional[Dict[str, Dict[str, Document]]] = None

    def _table(self, name: str) -> Dict[str, Document]:
        return self._tables.setdefault(name, {})

    @staticmethod
    def _copy(document: Document) -> Document:
        return json.loads(_to_json(document))

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            document = self._table(table).get(record_id)
            return self._copy(document) if document is not None else None

    def load_all(self, table: str) -> List[Document]:
        with self._lock:
            return [self._copy(document) for document in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Document]:
        with self._lock:
            return [self._copy(document) for document in self._table(table).values()
                    if _matches(document, filters)]

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                self._snapshot = copy.deepcopy(self._tables)
                self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None
            self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction and self._snapshot is not None:
                self._tables = self._snapshot
                logger.debug("In-memory transaction rolled back")
            self._snapshot = None
            self._in_transaction = False


class SQLiteStorage(StorageInterface):
    """
    SQLite backend: one ``(id, data, created_at, updated_at)`` table per
    record type with the document as JSON text.

    Writes outside ``atomic()`` commit immediately. Inside it they wait for
    the outermost block to finish; the connection's DEFERRED isolation opens
    the SQLite transaction on the first write.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False,
                                           isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)"
        )
        # DDL inside an open transaction stays part of it
        if not self._in_transaction:
            self._connection.commit()
            self._known_tables.add(table)

    def _write(self, table: str, sql: str, params: tuple) -> sqlite3.Cursor:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(sql, params)
            if not self._in_transaction:
                self._connection.commit()
            return cursor

    def _select(self, table: str, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(sql, params).fetchall()

    def save(self, table: str, record_id: str, data: Document) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._write(table, f"""
            INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?, COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?), ?)
        """, (record_id, _to_json(data), record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Document]:
        rows = self._select(table, f"SELECT data FROM {table} WHERE id = ?", (record_id,))
        return json.loads(rows[0]['data']) if rows else None

    def load_all(self, table: str) -> List[Document]:
        rows = self._select(table, f"SELECT data FROM {table} ORDER BY created_at")
        return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        cursor = self._write(table, f"DELETE FROM {table} WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        rows = self._select(table, f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
        return bool(rows)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Document]:
        """
        Filter on top-level JSON fields in SQL, then re-check in Python so
        both backends agree on type-sensitive comparisons.
        """
        clauses = []
        params = []
        for key, value in filters.items():
            if not key.isidentifier():
                raise ValueError(f"Invalid filter field: {key!r}")
            if isinstance(value, (str, int, float)):
                clauses.append(f"json_extract(data, '$.{key}') = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._select(table, f"SELECT data FROM {table} {where} ORDER BY created_at",
                            tuple(params))
        documents = (json.loads(row['data']) for row in rows)
        return [document for document in documents if _matches(document, filters)]

    def begin_transaction(self) -> None:
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                logger.debug("SQLite transaction rolled back")

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage, ``sqlite:///path.db`` (or
    ``sqlite://`` for an in-memory database) gives SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
