"""
EdPsych Repository Layer
Generic store capability consumed by the maintenance engine, with SQLite and
in-memory bindings and an optional optimizer capability.
"""

import copy
import logging
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger('edpsych.repository')

Where = Optional[Dict[str, Any]]

# Keeps IN (...) lists under SQLite's bound-parameter limit
MAX_IN_PARAMETERS = 500

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class RepositoryError(Exception):
    """Base error raised by repository bindings."""


class RepositoryUnavailable(RepositoryError):
    """The underlying store cannot be reached."""


class ModelNotFound(RepositoryError):
    """A write targeted a model the store does not have."""


class Repository(ABC):
    """Count/query/update/delete by predicate over named models.

    ``where`` maps a field name to a value. ``None`` matches NULL, a list,
    tuple or set matches any of its members, anything else matches by
    equality. Models that do not exist read as empty.
    """

    id_field: str = 'id'

    @abstractmethod
    def probe(self) -> None:
        """Trivial connectivity check; raises RepositoryUnavailable."""

    @abstractmethod
    def introspect(self) -> Dict[str, List[str]]:
        """Return the live model inventory as model name -> field names."""

    def has_model(self, model: str) -> bool:
        return model in self.introspect()

    @abstractmethod
    def count(self, model: str, where: Where = None) -> int:
        ...

    @abstractmethod
    def query(self, model: str, where: Where = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def insert(self, model: str, values: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def update(self, model: str, record_id: Any, values: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    def delete(self, model: str, where: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    def unit_of_work(self):
        """Context manager yielding a transactional view of this repository.

        Writes made through the view are committed when the block exits
        normally and rolled back when it raises.
        """


class Optimizer(ABC):
    """Store-specific maintenance commands a repository may offer."""

    @abstractmethod
    def vacuum(self) -> None:
        ...

    @abstractmethod
    def analyze(self) -> None:
        ...

    @abstractmethod
    def reindex(self) -> None:
        ...


def supports_optimization(repository: Repository) -> bool:
    return isinstance(repository, Optimizer)


def _matches(row: Dict[str, Any], where: Where) -> bool:
    for field_name, expected in (where or {}).items():
        actual = row.get(field_name)
        if expected is None:
            if actual is not None:
                return False
        elif isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryRepository(Repository):
    """Dictionary-backed store used for dry runs and tests."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                 schema: Optional[Dict[str, List[str]]] = None, id_field: str = 'id'):
        self._tables: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self._schema = {name: list(fields) for name, fields in (schema or {}).items()}
        for name in self._schema:
            self._tables.setdefault(name, [])
        self.id_field = id_field
        self.available = True
        self._lock = threading.RLock()

    def _check_available(self):
        if not self.available:
            raise RepositoryUnavailable("In-memory store is offline")

    def probe(self) -> None:
        self._check_available()

    def introspect(self) -> Dict[str, List[str]]:
        with self._lock:
            self._check_available()
            inventory = {}
            for name, rows in self._tables.items():
                if name in self._schema:
                    inventory[name] = list(self._schema[name])
                    continue
                fields: List[str] = []
                for row in rows:
                    for key in row:
                        if key not in fields:
                            fields.append(key)
                inventory[name] = fields
            return inventory

    def has_model(self, model: str) -> bool:
        with self._lock:
            self._check_available()
            return model in self._tables

    def count(self, model: str, where: Where = None) -> int:
        return len(self.query(model, where))

    def query(self, model: str, where: Where = None) -> List[Dict[str, Any]]:
        with self._lock:
            self._check_available()
            rows = self._tables.get(model)
            if rows is None:
                return []
            return [dict(row) for row in rows if _matches(row, where)]

    def insert(self, model: str, values: Dict[str, Any]) -> None:
        with self._lock:
            self._check_available()
            if model not in self._tables:
                raise ModelNotFound(f"Model {model} does not exist")
            self._tables[model].append(dict(values))

    def update(self, model: str, record_id: Any, values: Dict[str, Any]) -> int:
        with self._lock:
            self._check_available()
            updated = 0
            for row in self._tables.get(model, []):
                if row.get(self.id_field) == record_id:
                    row.update(values)
                    updated += 1
            return updated

    def delete(self, model: str, where: Dict[str, Any]) -> int:
        with self._lock:
            self._check_available()
            rows = self._tables.get(model)
            if rows is None:
                return 0
            kept = [row for row in rows if not _matches(row, where)]
            self._tables[model] = kept
            return len(rows) - len(kept)

    @contextmanager
    def unit_of_work(self) -> Iterator['InMemoryRepository']:
        with self._lock:
            self._check_available()
            saved = copy.deepcopy(self._tables)
            try:
                yield self
            except BaseException:
                self._tables = saved
                raise


def _quote(identifier: str) -> str:
    if not _IDENTIFIER.match(identifier or ''):
        raise RepositoryError(f"Invalid identifier: {identifier!r}")
    return f'"{identifier}"'


def _split_where(where: Where) -> List[Dict[str, Any]]:
    """Split an oversized IN list into several predicates."""
    where = dict(where or {})
    for field_name, value in where.items():
        if isinstance(value, (list, tuple, set, frozenset)) and len(value) > MAX_IN_PARAMETERS:
            values = list(value)
            return [
                {**where, field_name: values[i:i + MAX_IN_PARAMETERS]}
                for i in range(0, len(values), MAX_IN_PARAMETERS)
            ]
    return [where]


def _build_where(where: Where):
    clauses = []
    params: List[Any] = []
    for field_name, value in (where or {}).items():
        column = _quote(field_name)
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                clauses.append("0")
                continue
            placeholders = ', '.join('?' for _ in values)
            clauses.append(f"{column} IN ({placeholders})")
            params.extend(values)
        else:
            clauses.append(f"{column} = ?")
            params.append(value)
    sql = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return sql, params


class SQLiteRepository(Repository, Optimizer):
    """Repository over a SQLite database file, one table per model."""

    def __init__(self, db_path: str, id_field: str = 'id', timeout: float = 30.0):
        self.db_path = db_path
        self.id_field = id_field
        self.timeout = timeout

    def get_database_connection(self) -> sqlite3.Connection:
        """Get database connection with proper configuration."""
        try:
            conn = sqlite3.connect(f"file:{self.db_path}?mode=rw", uri=True, timeout=self.timeout)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            return conn
        except sqlite3.Error as e:
            logger.error(f"Database connection error: {e}")
            raise RepositoryUnavailable(str(e)) from e

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = self.get_database_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _run(self, operation):
        try:
            with self._session() as conn:
                return operation(conn)
        except RepositoryError:
            raise
        except sqlite3.Error as e:
            raise RepositoryError(str(e)) from e

    @staticmethod
    def _table_names(conn: sqlite3.Connection) -> List[str]:
        cursor = conn.execute("""
            SELECT name FROM sqlite_master
            WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
            ORDER BY name
        """)
        return [row[0] for row in cursor.fetchall()]

    @staticmethod
    def _has_table(conn: sqlite3.Connection, model: str) -> bool:
        cursor = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (model,)
        )
        return cursor.fetchone() is not None

    def probe(self) -> None:
        def run(conn):
            conn.execute("SELECT 1").fetchone()
        try:
            self._run(run)
        except RepositoryUnavailable:
            raise
        except RepositoryError as e:
            raise RepositoryUnavailable(str(e)) from e

    def introspect(self) -> Dict[str, List[str]]:
        def run(conn):
            inventory = {}
            for table in self._table_names(conn):
                cursor = conn.execute(f"PRAGMA table_info({_quote(table)})")
                inventory[table] = [row['name'] for row in cursor.fetchall()]
            return inventory
        return self._run(run)

    def has_model(self, model: str) -> bool:
        return self._run(lambda conn: self._has_table(conn, model))

    def count(self, model: str, where: Where = None) -> int:
        def run(conn):
            if not self._has_table(conn, model):
                return 0
            total = 0
            for chunk in _split_where(where):
                clause, params = _build_where(chunk)
                cursor = conn.execute(f"SELECT COUNT(*) FROM {_quote(model)}{clause}", params)
                total += cursor.fetchone()[0]
            return total
        return self._run(run)

    def query(self, model: str, where: Where = None) -> List[Dict[str, Any]]:
        def run(conn):
            if not self._has_table(conn, model):
                return []
            rows = []
            for chunk in _split_where(where):
                clause, params = _build_where(chunk)
                cursor = conn.execute(f"SELECT * FROM {_quote(model)}{clause}", params)
                rows.extend(dict(row) for row in cursor.fetchall())
            return rows
        return self._run(run)

    def insert(self, model: str, values: Dict[str, Any]) -> None:
        def run(conn):
            if not self._has_table(conn, model):
                raise ModelNotFound(f"Model {model} does not exist")
            columns = ', '.join(_quote(name) for name in values)
            placeholders = ', '.join('?' for _ in values)
            conn.execute(
                f"INSERT INTO {_quote(model)} ({columns}) VALUES ({placeholders})",
                list(values.values())
            )
        self._run(run)

    def update(self, model: str, record_id: Any, values: Dict[str, Any]) -> int:
        if not values:
            return 0

        def run(conn):
            if not self._has_table(conn, model):
                return 0
            assignments = ', '.join(f"{_quote(name)} = ?" for name in values)
            cursor = conn.execute(
                f"UPDATE {_quote(model)} SET {assignments} WHERE {_quote(self.id_field)} = ?",
                [*values.values(), record_id]
            )
            return cursor.rowcount
        return self._run(run)

    def delete(self, model: str, where: Dict[str, Any]) -> int:
        def run(conn):
            if not self._has_table(conn, model):
                return 0
            deleted = 0
            for chunk in _split_where(where):
                clause, params = _build_where(chunk)
                cursor = conn.execute(f"DELETE FROM {_quote(model)}{clause}", params)
                deleted += cursor.rowcount
            return deleted
        return self._run(run)

    @contextmanager
    def unit_of_work(self) -> Iterator['SQLiteRepository']:
        conn = self.get_database_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield _SQLiteUnitOfWork(self, conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _execute_maintenance(self, statement: str) -> None:
        try:
            with closing(self.get_database_connection()) as conn:
                conn.isolation_level = None
                conn.execute(statement)
        except sqlite3.Error as e:
            raise RepositoryError(f"{statement} failed: {e}") from e

    def vacuum(self) -> None:
        logger.info("Performing full database VACUUM...")
        self._execute_maintenance("VACUUM")

    def analyze(self) -> None:
        logger.info("Analyzing all tables...")
        self._execute_maintenance("ANALYZE")

    def reindex(self) -> None:
        logger.info("Reindexing all indexes...")
        self._execute_maintenance("REINDEX")


class _SQLiteUnitOfWork(SQLiteRepository):
    """Transactional view sharing one open connection."""

    def __init__(self, parent: SQLiteRepository, conn: sqlite3.Connection):
        super().__init__(parent.db_path, parent.id_field, parent.timeout)
        self._conn = conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        yield self._conn

    @contextmanager
    def unit_of_work(self) -> Iterator['SQLiteRepository']:
        yield self


def create_repository(config: Dict[str, Any]) -> Repository:
    """Build the repository binding named by the configuration."""
    db_path = config.get('database', {}).get('path', './data/edpsych.db')
    id_field = config.get('integrity', {}).get('id_field', 'id')
    return SQLiteRepository(db_path, id_field=id_field)
