"""
Storage Backend Module

Provides the query primitives the ledger engine composes, an abstract
document storage interface, and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id; every
table keeps an insertion sequence used to break ordering ties.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from datetime import datetime, timezone
from dataclasses import dataclass, field
from pathlib import Path
from contextlib import contextmanager, nullcontext
import copy
import json
import logging
import re
import sqlite3
import threading

logger = logging.getLogger(__name__)

ASCENDING = 1
DESCENDING = -1

# Field names and table names are interpolated into SQL and JSON paths
FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")

FieldPath = Union[str, Tuple[str, ...]]
RecordBatch = Sequence[Tuple[str, str, Dict[str, Any]]]

_MISSING = object()


def field_parts(path: FieldPath) -> Tuple[str, ...]:
    """Normalize a field path to a tuple of validated key names"""
    parts = (path,) if isinstance(path, str) else tuple(path)
    if not parts:
        raise ValueError("field path must not be empty")
    for part in parts:
        if not isinstance(part, str) or not FIELD_NAME_PATTERN.match(part):
            raise ValueError(f"invalid field name: {part!r}")
    return parts


def validate_table_name(table: str) -> str:
    if not isinstance(table, str) or not FIELD_NAME_PATTERN.match(table) or "-" in table:
        raise ValueError(f"invalid table name: {table!r}")
    return table


def get_field(record: Dict[str, Any], path: FieldPath, default: Any = _MISSING) -> Any:
    """Read a possibly nested field from a record"""
    value: Any = record
    for part in field_parts(path):
        if not isinstance(value, dict) or part not in value:
            return default
        value = value[part]
    return value


def _same_value(left: Any, right: Any) -> bool:
    # JSON keeps bool and number distinct; mirror that for scalars
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


@dataclass
class Query:
    """
    Declarative record filter with ordering and paging.

    All condition groups are ANDed together. Within ``prefixes`` a record
    matches a field when its value equals any listed prefix or starts with
    the prefix followed by ``delimiter``.
    """
    equals: Dict[FieldPath, Any] = field(default_factory=dict)
    one_of: Dict[FieldPath, List[Any]] = field(default_factory=dict)
    prefixes: Dict[FieldPath, List[str]] = field(default_factory=dict)
    ranges: Dict[FieldPath, Tuple[Optional[Any], Optional[Any]]] = field(default_factory=dict)
    sort: List[Tuple[FieldPath, int]] = field(default_factory=list)
    offset: int = 0
    limit: Optional[int] = None
    delimiter: str = ":"

    def __post_init__(self):
        if self.offset < 0:
            raise ValueError("offset must not be negative")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must not be negative")
        for _, direction in self.sort:
            if direction not in (ASCENDING, DESCENDING):
                raise ValueError(f"invalid sort direction: {direction!r}")

    def matches(self, record: Dict[str, Any]) -> bool:
        """Evaluate the filter conditions against one record"""
        for path, expected in self.equals.items():
            actual = get_field(record, path)
            if expected is None:
                if actual is not _MISSING and actual is not None:
                    return False
            elif actual is _MISSING or not _same_value(actual, expected):
                return False

        for path, candidates in self.one_of.items():
            actual = get_field(record, path)
            if actual is _MISSING or not any(_same_value(actual, c) for c in candidates):
                return False

        for path, prefixes in self.prefixes.items():
            actual = get_field(record, path)
            if not isinstance(actual, str):
                return False
            if not any(actual == p or actual.startswith(p + self.delimiter) for p in prefixes):
                return False

        for path, (low, high) in self.ranges.items():
            actual = get_field(record, path)
            if actual is _MISSING or actual is None:
                return False
            if low is not None and actual < low:
                return False
            if high is not None and actual > high:
                return False

        return True

    def apply(self, records: Iterable[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
        """
        Filter, sort and slice records already in insertion order.

        Returns:
            (page of records, total number of matches before slicing)
        """
        matched = [record for record in records if self.matches(record)]

        # Stable sorts from the last key to the first keep insertion order on ties
        for path, direction in reversed(self.sort):
            matched.sort(
                key=lambda r, p=path: _sort_key(get_field(r, p, None)),
                reverse=direction == DESCENDING
            )

        total = len(matched)
        end = None if self.limit is None else self.offset + self.limit
        return matched[self.offset:end], total


def _sort_key(value: Any) -> Tuple[bool, Any]:
    return (value is None, "" if value is None else value)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def insert_atomic(self, records: RecordBatch) -> None:
        """Insert (table, record_id, data) records so they become visible together or not at all"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def update_fields(self, table: str, record_id: str, changes: Dict[str, Any],
                      precondition: Optional[Dict[str, Any]] = None) -> bool:
        """
        Set top-level fields on one record.

        When a precondition is given the update only applies if every
        listed field currently holds the expected value.

        Returns:
            True if the record was updated
        """
        pass

    @abstractmethod
    def update_where(self, table: str, query: Query, changes: Dict[str, Any]) -> int:
        """Set top-level fields on every record matching the query; returns the count"""
        pass

    @abstractmethod
    def find(self, table: str, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        """Find records matching a query; returns (page, total matches)"""
        pass

    @abstractmethod
    def aggregate(self, table: str, query: Query, field_path: FieldPath) -> Tuple[int, int]:
        """Integer sum of a field over the (paged) matches; returns (sum, count)"""
        pass

    @abstractmethod
    def distinct(self, table: str, field_path: FieldPath,
                 query: Optional[Query] = None) -> List[Any]:
        """Distinct non-null values of a field over matching records"""
        pass

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

    def update_field(self, table: str, record_id: str, field_name: str, value: Any,
                     precondition: Optional[Dict[str, Any]] = None) -> bool:
        """Conditional single-field update"""
        return self.update_fields(table, record_id, {field_name: value}, precondition)

    def create_index(self, table: str, fields: Sequence[FieldPath]) -> None:
        """Create a secondary index (default no-op)"""
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


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._closed = False

    def _ensure_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Ensure table exists"""
        validate_table_name(table)
        if self._closed:
            raise RuntimeError("storage is closed")
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy through JSON to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def insert_atomic(self, records: RecordBatch) -> None:
        """Insert records all-or-nothing"""
        with self._lock:
            staged = []
            for table, record_id, data in records:
                rows = self._ensure_table(table)
                if record_id in rows or any(t == table and r == record_id for t, r, _ in staged):
                    raise ValueError(f"record {record_id} already exists in {table}")
                staged.append((table, record_id, self._copy(data)))
            for table, record_id, data in staged:
                self._data[table][record_id] = data

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._ensure_table(table).get(record_id)
            if record:
                return self._copy(record)
            return None

    def update_fields(self, table: str, record_id: str, changes: Dict[str, Any],
                      precondition: Optional[Dict[str, Any]] = None) -> bool:
        """Update fields on one record if the precondition holds"""
        for key in changes:
            field_parts(key)
        with self._lock:
            record = self._ensure_table(table).get(record_id)
            if record is None:
                return False
            if precondition and not Query(equals=dict(precondition)).matches(record):
                return False
            record.update(self._copy(changes))
            return True

    def update_where(self, table: str, query: Query, changes: Dict[str, Any]) -> int:
        """Update fields on every matching record"""
        for key in changes:
            field_parts(key)
        with self._lock:
            updated = 0
            for record in self._ensure_table(table).values():
                if query.matches(record):
                    record.update(self._copy(changes))
                    updated += 1
            return updated

    def find(self, table: str, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        """Find records matching a query"""
        with self._lock:
            page, total = query.apply(self._ensure_table(table).values())
            return [self._copy(record) for record in page], total

    def aggregate(self, table: str, query: Query, field_path: FieldPath) -> Tuple[int, int]:
        """Sum an integer field over the matching page"""
        with self._lock:
            page, _ = query.apply(self._ensure_table(table).values())
            total = 0
            for record in page:
                value = get_field(record, field_path, None)
                if value is not None:
                    total += int(value)
            return total, len(page)

    def distinct(self, table: str, field_path: FieldPath,
                 query: Optional[Query] = None) -> List[Any]:
        """Distinct values of a field"""
        with self._lock:
            values = []
            seen = set()
            for record in self._ensure_table(table).values():
                if query is not None and not query.matches(record):
                    continue
                value = get_field(record, field_path, None)
                if value is None or value in seen:
                    continue
                seen.add(value)
                values.append(value)
            return values

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._ensure_table(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage"""
        with self._lock:
            self._closed = True

    def begin_transaction(self) -> None:
        """Snapshot all tables so a rollback can restore them"""
        with self._lock:
            if self._snapshot is None:
                self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        """Drop the rollback snapshot"""
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken at begin_transaction"""
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 30000")

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("storage is closed")
        return self._connection

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        validate_table_name(table)
        if table in self._tables:
            return
        with self._lock:
            self.connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._tables.add(table)

    @staticmethod
    def _json_path(path: FieldPath) -> str:
        return "$" + "".join(f'."{part}"' for part in field_parts(path))

    @classmethod
    def _expr(cls, path: FieldPath) -> str:
        return f"json_extract(data, '{cls._json_path(path)}')"

    @classmethod
    def _where(cls, query: Query) -> Tuple[str, List[Any]]:
        """Translate query conditions to a WHERE clause"""
        conditions = []
        params: List[Any] = []

        for path, expected in query.equals.items():
            expr = cls._expr(path)
            if expected is None:
                conditions.append(f"{expr} IS NULL")
            elif isinstance(expected, bool):
                conditions.append(f"{expr} = ? AND json_type(data, '{cls._json_path(path)}') = ?")
                params.extend([int(expected), "true" if expected else "false"])
            else:
                conditions.append(f"{expr} = ?")
                params.append(expected)

        for path, candidates in query.one_of.items():
            if not candidates:
                conditions.append("0")
                continue
            placeholders = ", ".join("?" for _ in candidates)
            conditions.append(f"{cls._expr(path)} IN ({placeholders})")
            params.extend(candidates)

        for path, prefixes in query.prefixes.items():
            if not prefixes:
                conditions.append("0")
                continue
            expr = cls._expr(path)
            alternatives = []
            for prefix in prefixes:
                # substr instead of LIKE: LIKE is case-insensitive and treats _ and % specially
                head = prefix + query.delimiter
                alternatives.append(f"({expr} = ? OR substr({expr}, 1, ?) = ?)")
                params.extend([prefix, len(head), head])
            conditions.append("(" + " OR ".join(alternatives) + ")")

        for path, (low, high) in query.ranges.items():
            expr = cls._expr(path)
            if low is not None:
                conditions.append(f"{expr} >= ?")
                params.append(low)
            if high is not None:
                conditions.append(f"{expr} <= ?")
                params.append(high)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        return where_clause, params

    @classmethod
    def _order_and_page(cls, query: Query) -> Tuple[str, List[Any]]:
        order = [
            f"{cls._expr(path)} {'ASC' if direction == ASCENDING else 'DESC'}"
            for path, direction in query.sort
        ]
        order.append("seq ASC")
        limit = -1 if query.limit is None else query.limit
        return f"ORDER BY {', '.join(order)} LIMIT ? OFFSET ?", [limit, query.offset]

    def _autocommit(self):
        # Writes outside an explicit transaction run in their own one
        return self.atomic() if not self._in_transaction else nullcontext()

    def insert_atomic(self, records: RecordBatch) -> None:
        """Insert records inside one SQLite transaction"""
        with self._lock:
            for table, _, _ in records:
                self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            with self._autocommit():
                for table, record_id, data in records:
                    self.connection.execute(f"""
                        INSERT INTO {table} (id, data, created_at, updated_at)
                        VALUES (?, ?, ?, ?)
                    """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self.connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def _set_clause(self, changes: Dict[str, Any]) -> Tuple[str, List[Any]]:
        assignments = []
        params: List[Any] = []
        for key, value in changes.items():
            assignments.append(f"'{self._json_path(key)}', json(?)")
            params.append(json.dumps(value, default=str))
        params.append(datetime.now(timezone.utc).isoformat())
        return f"data = json_set(data, {', '.join(assignments)}), updated_at = ?", params

    def update_fields(self, table: str, record_id: str, changes: Dict[str, Any],
                      precondition: Optional[Dict[str, Any]] = None) -> bool:
        """Conditional UPDATE of one record"""
        if not changes:
            return False
        with self._lock:
            self._ensure_table(table)
            set_clause, set_params = self._set_clause(changes)
            where_clause, where_params = self._where(Query(equals=dict(precondition or {})))
            with self._autocommit():
                cursor = self.connection.execute(f"""
                    UPDATE {table} SET {set_clause}
                    WHERE id = ? AND {where_clause}
                """, set_params + [record_id] + where_params)
            return cursor.rowcount > 0

    def update_where(self, table: str, query: Query, changes: Dict[str, Any]) -> int:
        """UPDATE every matching record"""
        if not changes:
            return 0
        with self._lock:
            self._ensure_table(table)
            set_clause, set_params = self._set_clause(changes)
            where_clause, where_params = self._where(query)
            with self._autocommit():
                cursor = self.connection.execute(f"""
                    UPDATE {table} SET {set_clause} WHERE {where_clause}
                """, set_params + where_params)
            return cursor.rowcount

    def find(self, table: str, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        """Find records matching a query"""
        with self._lock:
            self._ensure_table(table)
            where_clause, params = self._where(query)
            total = self.connection.execute(f"""
                SELECT COUNT(*) AS count FROM {table} WHERE {where_clause}
            """, params).fetchone()['count']
            tail, tail_params = self._order_and_page(query)
            cursor = self.connection.execute(f"""
                SELECT data FROM {table} WHERE {where_clause} {tail}
            """, params + tail_params)
            return [json.loads(row['data']) for row in cursor.fetchall()], total

    def aggregate(self, table: str, query: Query, field_path: FieldPath) -> Tuple[int, int]:
        """
        Sum and count over the matching page.

        Summed in Python: SQLite JSON functions turn integers past 64 bits
        into floats.
        """
        with self._lock:
            self._ensure_table(table)
            where_clause, params = self._where(query)
            tail, tail_params = self._order_and_page(query)
            cursor = self.connection.execute(f"""
                SELECT data FROM {table} WHERE {where_clause} {tail}
            """, params + tail_params)
            total = 0
            count = 0
            for row in cursor:
                value = get_field(json.loads(row['data']), field_path, None)
                if value is not None:
                    total += int(value)
                count += 1
            return total, count

    def distinct(self, table: str, field_path: FieldPath,
                 query: Optional[Query] = None) -> List[Any]:
        """SELECT DISTINCT over a JSON field"""
        with self._lock:
            self._ensure_table(table)
            where_clause, params = self._where(query or Query())
            expr = self._expr(field_path)
            cursor = self.connection.execute(f"""
                SELECT DISTINCT {expr} AS value FROM {table}
                WHERE {where_clause} AND {expr} IS NOT NULL
            """, params)
            return [row['value'] for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self.connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self.connection.execute(f"DELETE FROM {table}")

    def create_index(self, table: str, fields: Sequence[FieldPath]) -> None:
        """Create an expression index over JSON fields"""
        with self._lock:
            self._ensure_table(table)
            names = "_".join("_".join(field_parts(f)) for f in fields).replace("-", "_")
            columns = ", ".join(self._expr(f) for f in fields)
            self.connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_{names}
                ON {table}({columns})
            """)

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                self.connection.execute("BEGIN IMMEDIATE")
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self.connection.execute("COMMIT")
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self.connection.execute("ROLLBACK")
                self._in_transaction = False
                # Tables created inside the transaction are gone again
                self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.debug("SQLite connection closed: %s", self.db_path)
