"""
Storage Backend Module

Provides the abstract account store interface and implementations for in-memory
(testing), SQLite and PostgreSQL persistence. Records are JSON documents keyed by
id; every record carries a store-managed version counter that backs the
compare-and-set update used for optimistic concurrency control.

Monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Iterator, List, Optional, Any, Tuple, Union
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import json
import queue
import sqlite3
import threading

from .errors import DuplicateKeyError, StoreError, StoreTimeout, StoreUnavailable
from .logging_config import get_logger


VERSION_FIELD = "version"


def _strip_version(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k != VERSION_FIELD}


def _index_name(table: str, field: str) -> str:
    return f"ux_{table}_{field}"


class StorageInterface(ABC):
    """Abstract interface for account store backends"""

    @abstractmethod
    def ensure_table(self, table: str, unique_fields: Iterable[str] = ()) -> None:
        """Create a table and its unique constraints if missing"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record with version 1; raises DuplicateKeyError on collision"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        """Load a record (including its version); for_update locks the row inside atomic()"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters, oldest first"""
        pass

    @abstractmethod
    def compare_and_set(self, table: str, record_id: str, expected_version: int,
                        data: Dict[str, Any]) -> bool:
        """Replace a record only if its version still equals expected_version"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def atomic(self):
        """Context manager; store calls made by this thread inside it commit together"""
        pass

    def ping(self) -> None:
        """Verify the store is reachable (default no-op)"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connections"""
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, Tuple[str, ...]] = {}
        self._lock = threading.RLock()
        # Undo log of (table, record_id, previous record) while inside atomic()
        self._undo: Optional[List[Tuple[str, str, Optional[Dict[str, Any]]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _remember(self, table: str, record_id: str) -> None:
        if self._undo is not None:
            self._undo.append((table, record_id, self._table(table).get(record_id)))

    def ensure_table(self, table: str, unique_fields: Iterable[str] = ()) -> None:
        with self._lock:
            self._table(table)
            fields = tuple(unique_fields)
            if fields:
                self._unique[table] = tuple(dict.fromkeys(self._unique.get(table, ()) + fields))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            records = self._table(table)
            if record_id in records:
                raise DuplicateKeyError(table, "id", record_id)
            for field in self._unique.get(table, ()):
                value = data.get(field)
                if value is not None and any(r["data"].get(field) == value for r in records.values()):
                    raise DuplicateKeyError(table, field, value)
            self._remember(table, record_id)
            records[record_id] = {"data": self._copy(_strip_version(data)), VERSION_FIELD: 1}

    def load(self, table: str, record_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is None:
                return None
            result = self._copy(record["data"])
            result[VERSION_FIELD] = record[VERSION_FIELD]
            return result

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            results = []
            for record in self._table(table).values():
                data = record["data"]
                if all(key in data and data[key] == value for key, value in filters.items()):
                    result = self._copy(data)
                    result[VERSION_FIELD] = record[VERSION_FIELD]
                    results.append(result)
            return results

    def compare_and_set(self, table: str, record_id: str, expected_version: int,
                        data: Dict[str, Any]) -> bool:
        with self._lock:
            records = self._table(table)
            current = records.get(record_id)
            if current is None or current[VERSION_FIELD] != expected_version:
                return False
            self._remember(table, record_id)
            records[record_id] = {
                "data": self._copy(_strip_version(data)),
                VERSION_FIELD: expected_version + 1,
            }
            return True

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Hold the store lock for the block and undo its writes on error"""
        with self._lock:
            outermost = self._undo is None
            if outermost:
                self._undo = []
            mark = len(self._undo)
            try:
                yield
            except BaseException:
                while len(self._undo) > mark:
                    table, record_id, previous = self._undo.pop()
                    if previous is None:
                        self._table(table).pop(record_id, None)
                    else:
                        self._table(table)[record_id] = previous
                raise
            finally:
                if outermost:
                    self._undo = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Connections are checked out of a small pool per operation, or held for the
    length of an atomic() block. Transactions use BEGIN IMMEDIATE so the write
    lock is taken before the first read, which serializes read-modify-write
    blocks across connections.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", pool_size: int = 5,
                 pool_timeout: float = 30.0, timeout: float = 5.0):
        self.db_path = str(db_path)
        # Every connection to ":memory:" opens a private database
        self.pool_size = 1 if self.db_path == ":memory:" else max(1, pool_size)
        self.pool_timeout = pool_timeout
        self.timeout = timeout
        self._pool: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue(maxsize=self.pool_size)
        self._all: List[sqlite3.Connection] = []
        self._pool_lock = threading.Lock()
        self._local = threading.local()
        self._known: Dict[str, Tuple[str, ...]] = {}
        self.logger = get_logger("account_ledger.storage.sqlite")

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: autocommit outside explicit BEGIN
        connection = sqlite3.connect(
            self.db_path, timeout=self.timeout, isolation_level=None, check_same_thread=False
        )
        connection.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            connection.execute("PRAGMA journal_mode = WAL")
            connection.execute("PRAGMA synchronous = NORMAL")
        return connection

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        """Translate sqlite3 driver errors into store errors"""
        try:
            yield
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise StoreTimeout(f"SQLite {operation} timed out: {e}", operation=operation) from e
            raise StoreUnavailable(f"SQLite {operation} failed: {e}", operation=operation) from e
        except sqlite3.Error as e:
            raise StoreUnavailable(f"SQLite {operation} failed: {e}", operation=operation) from e

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Yield this thread's transaction connection, or check one out of the pool"""
        current = getattr(self._local, "connection", None)
        if current is not None:
            yield current
            return

        try:
            connection = self._pool.get_nowait()
        except queue.Empty:
            connection = None
            with self._pool_lock:
                if len(self._all) < self.pool_size:
                    with self._errors("connect"):
                        connection = self._connect()
                    self._all.append(connection)
            if connection is None:
                try:
                    connection = self._pool.get(timeout=self.pool_timeout)
                except queue.Empty:
                    raise StoreTimeout(
                        f"No SQLite connection available after {self.pool_timeout}s",
                        operation=operation,
                    )
        try:
            yield connection
        finally:
            self._pool.put(connection)

    def _in_transaction(self) -> bool:
        return getattr(self._local, "connection", None) is not None

    def ensure_table(self, table: str, unique_fields: Iterable[str] = ()) -> None:
        fields = tuple(unique_fields)
        known = self._known.get(table)
        if known is not None and set(fields) <= set(known):
            return

        with self._connection("ensure_table") as connection, self._errors("ensure_table"):
            connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            for field in fields:
                connection.execute(f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS {_index_name(table, field)}
                    ON {table}(json_extract(data, '$.{field}'))
                """)

        # DDL inside an open transaction may still roll back
        if not self._in_transaction():
            self._known[table] = tuple(dict.fromkeys((known or ()) + fields))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self.ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(_strip_version(data), default=str)

        with self._connection("insert") as connection, self._errors("insert"):
            try:
                connection.execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (?, ?, 1, ?, ?)
                """, (record_id, data_json, now, now))
            except sqlite3.IntegrityError as e:
                field = "id"
                for candidate in self._known.get(table, ()):
                    if _index_name(table, candidate) in str(e):
                        field = candidate
                        break
                value = record_id if field == "id" else data.get(field)
                raise DuplicateKeyError(table, field, value) from e

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        result = json.loads(row["data"])
        result[VERSION_FIELD] = row["version"]
        return result

    def load(self, table: str, record_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        # for_update needs no extra SQL: BEGIN IMMEDIATE already holds the write lock
        self.ensure_table(table)
        with self._connection("load") as connection, self._errors("load"):
            row = connection.execute(f"""
                SELECT data, version FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            return self._row_to_dict(row) if row else None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.ensure_table(table)
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            conditions.append("json_extract(data, ?) = ?")
            params.extend([f"$.{key}", value])
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self._connection("find") as connection, self._errors("find"):
            rows = connection.execute(f"""
                SELECT data, version FROM {table}
                {where_clause}
                ORDER BY created_at, rowid
            """, params).fetchall()
            return [self._row_to_dict(row) for row in rows]

    def compare_and_set(self, table: str, record_id: str, expected_version: int,
                        data: Dict[str, Any]) -> bool:
        self.ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(_strip_version(data), default=str)

        with self._connection("compare_and_set") as connection, self._errors("compare_and_set"):
            cursor = connection.execute(f"""
                UPDATE {table}
                SET data = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
            """, (data_json, now, record_id, expected_version))
            return cursor.rowcount == 1

    def count(self, table: str) -> int:
        self.ensure_table(table)
        with self._connection("count") as connection, self._errors("count"):
            row = connection.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            return row["count"]

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run the block in one SQLite transaction on a dedicated connection"""
        current = getattr(self._local, "connection", None)
        if current is not None:
            depth = getattr(self._local, "depth", 0) + 1
            savepoint = f"sp_{depth}"
            self._local.depth = depth
            try:
                with self._errors("savepoint"):
                    current.execute(f"SAVEPOINT {savepoint}")
                try:
                    yield
                except BaseException:
                    with self._errors("rollback"):
                        current.execute(f"ROLLBACK TO {savepoint}")
                        current.execute(f"RELEASE {savepoint}")
                    raise
                with self._errors("release"):
                    current.execute(f"RELEASE {savepoint}")
            finally:
                self._local.depth = depth - 1
            return

        with self._connection("atomic") as connection:
            with self._errors("begin"):
                connection.execute("BEGIN IMMEDIATE")
            self._local.connection = connection
            self._local.depth = 0
            try:
                yield
                with self._errors("commit"):
                    connection.execute("COMMIT")
            except BaseException:
                if connection.in_transaction:
                    connection.execute("ROLLBACK")
                raise
            finally:
                self._local.connection = None

    def ping(self) -> None:
        with self._connection("ping") as connection, self._errors("ping"):
            connection.execute("SELECT 1").fetchone()

    def close(self) -> None:
        """Close all pooled SQLite connections"""
        with self._pool_lock:
            for connection in self._all:
                connection.close()
            self._all = []
            self._pool = queue.LifoQueue(maxsize=self.pool_size)


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support and row locking"""

    def __init__(self, connection_string: str, pool_size: int = 5, pool_timeout: float = 30.0,
                 timeout: float = 5.0):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.pool_size = max(1, pool_size)
        self.pool_timeout = pool_timeout
        self.timeout = timeout
        # getconn() raises instead of waiting once every connection is checked out
        self._slots = threading.BoundedSemaphore(self.pool_size)
        self._local = threading.local()
        self._known: Dict[str, Tuple[str, ...]] = {}
        self.logger = get_logger("account_ledger.storage.postgresql")

        timeout_ms = int(timeout * 1000)
        with self._errors("connect"):
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                1, self.pool_size, connection_string,
                connect_timeout=max(1, int(timeout)),
                options=f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}",
                cursor_factory=self.extras.RealDictCursor,
            )

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        """Translate psycopg2 driver errors into store errors"""
        errors = self.psycopg2.errors
        try:
            yield
        except (errors.QueryCanceled, errors.LockNotAvailable) as e:
            raise StoreTimeout(f"PostgreSQL {operation} timed out: {e}", operation=operation) from e
        except self.psycopg2.pool.PoolError as e:
            raise StoreUnavailable(f"PostgreSQL pool exhausted during {operation}: {e}", operation=operation) from e
        except self.psycopg2.Error as e:
            raise StoreUnavailable(f"PostgreSQL {operation} failed: {e}", operation=operation) from e

    def _getconn(self, operation: str):
        """Check a connection out of the pool, waiting up to pool_timeout for a free one"""
        if not self._slots.acquire(timeout=self.pool_timeout):
            raise StoreTimeout(
                f"No PostgreSQL connection available after {self.pool_timeout}s",
                operation=operation,
            )
        try:
            with self._errors(operation):
                return self._pool.getconn()
        except BaseException:
            self._slots.release()
            raise

    def _putconn(self, connection) -> None:
        try:
            self._pool.putconn(connection, close=bool(connection.closed))
        finally:
            self._slots.release()

    @contextmanager
    def _cursor(self, operation: str):
        """Yield a cursor on this thread's transaction, or on a pooled connection that commits on exit"""
        current = getattr(self._local, "connection", None)
        if current is not None:
            with self._errors(operation):
                cursor = current.cursor()
            try:
                yield cursor
            finally:
                cursor.close()
            return

        connection = self._getconn(operation)
        try:
            cursor = connection.cursor()
            try:
                yield cursor
                connection.commit()
            except BaseException:
                if not connection.closed:
                    connection.rollback()
                raise
            finally:
                cursor.close()
        finally:
            self._putconn(connection)

    def _in_transaction(self) -> bool:
        return getattr(self._local, "connection", None) is not None

    def ensure_table(self, table: str, unique_fields: Iterable[str] = ()) -> None:
        fields = tuple(unique_fields)
        known = self._known.get(table)
        if known is not None and set(fields) <= set(known):
            return

        with self._cursor("ensure_table") as cursor, self._errors("ensure_table"):
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            for field in fields:
                cursor.execute(f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS {_index_name(table, field)}
                    ON {table} ((data ->> '{field}'))
                """)

        if not self._in_transaction():
            self._known[table] = tuple(dict.fromkeys((known or ()) + fields))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self.ensure_table(table)
        data_json = json.dumps(_strip_version(data), default=str)

        with self._cursor("insert") as cursor, self._errors("insert"):
            if self._in_transaction():
                cursor.execute("SAVEPOINT ledger_insert")
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, version)
                    VALUES (%s, %s, 1)
                """, (record_id, data_json))
            except self.psycopg2.errors.UniqueViolation as e:
                if self._in_transaction():
                    cursor.execute("ROLLBACK TO SAVEPOINT ledger_insert")
                field = "id"
                constraint = getattr(e.diag, "constraint_name", None) or ""
                for candidate in self._known.get(table, ()):
                    if constraint == _index_name(table, candidate):
                        field = candidate
                        break
                value = record_id if field == "id" else data.get(field)
                raise DuplicateKeyError(table, field, value) from e

    @staticmethod
    def _row_to_dict(row) -> Dict[str, Any]:
        result = dict(row["data"])
        result[VERSION_FIELD] = row["version"]
        return result

    def load(self, table: str, record_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        self.ensure_table(table)
        lock_clause = "FOR UPDATE" if for_update and self._in_transaction() else ""
        with self._cursor("load") as cursor, self._errors("load"):
            cursor.execute(f"""
                SELECT data, version FROM {table} WHERE id = %s {lock_clause}
            """, (record_id,))
            row = cursor.fetchone()
            return self._row_to_dict(row) if row else None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        self.ensure_table(table)
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            conditions.append("data ->> %s = %s")
            params.extend([key, str(value)])
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self._cursor("find") as cursor, self._errors("find"):
            cursor.execute(f"""
                SELECT data, version FROM {table}
                {where_clause}
                ORDER BY created_at, id
            """, params)
            return [self._row_to_dict(row) for row in cursor.fetchall()]

    def compare_and_set(self, table: str, record_id: str, expected_version: int,
                        data: Dict[str, Any]) -> bool:
        self.ensure_table(table)
        data_json = json.dumps(_strip_version(data), default=str)
        with self._cursor("compare_and_set") as cursor, self._errors("compare_and_set"):
            cursor.execute(f"""
                UPDATE {table}
                SET data = %s, version = version + 1, updated_at = NOW()
                WHERE id = %s AND version = %s
            """, (data_json, record_id, expected_version))
            return cursor.rowcount == 1

    def count(self, table: str) -> int:
        self.ensure_table(table)
        with self._cursor("count") as cursor, self._errors("count"):
            cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()["count"]

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run the block in one PostgreSQL transaction on a dedicated connection"""
        if self._in_transaction():
            depth = getattr(self._local, "depth", 0) + 1
            savepoint = f"sp_{depth}"
            self._local.depth = depth
            try:
                with self._cursor("savepoint") as cursor, self._errors("savepoint"):
                    cursor.execute(f"SAVEPOINT {savepoint}")
                try:
                    yield
                except BaseException:
                    with self._cursor("rollback") as cursor, self._errors("rollback"):
                        cursor.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                        cursor.execute(f"RELEASE SAVEPOINT {savepoint}")
                    raise
                with self._cursor("release") as cursor, self._errors("release"):
                    cursor.execute(f"RELEASE SAVEPOINT {savepoint}")
            finally:
                self._local.depth = depth - 1
            return

        connection = self._getconn("atomic")
        self._local.connection = connection
        self._local.depth = 0
        try:
            yield
            with self._errors("commit"):
                connection.commit()
        except BaseException:
            if not connection.closed:
                connection.rollback()
            raise
        finally:
            self._local.connection = None
            self._putconn(connection)

    def ping(self) -> None:
        with self._cursor("ping") as cursor, self._errors("ping"):
            cursor.execute("SELECT 1")

    def close(self) -> None:
        """Close all pooled PostgreSQL connections"""
        self._pool.closeall()


def create_storage(database_url: str, pool_size: int = 5, pool_timeout: float = 30.0,
                   timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported schemes: ``memory://``, ``sqlite:///path/to.db`` (``sqlite://`` for an
    in-process database) and ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", pool_size=pool_size,
                             pool_timeout=pool_timeout, timeout=timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, pool_size=pool_size,
                                 pool_timeout=pool_timeout, timeout=timeout)
    raise StoreError(f"Unsupported database URL: {database_url}", operation="configure")
