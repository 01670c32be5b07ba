"""
Async Storage Backend Module

Provides the async storage interface the ledger engine talks to, an
adapter running the sync backends in worker threads, and a production
async PostgreSQL backend using asyncpg with JSONB documents.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple
from contextlib import asynccontextmanager
from contextvars import ContextVar
import asyncio
import json
import logging

from .storage import (
    StorageInterface, InMemoryStorage, SQLiteStorage, Query, FieldPath, RecordBatch,
    ASCENDING, field_parts, validate_table_name
)
from .exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

# The storage (and, for PostgreSQL, the connection) owning the current atomic scope
_ATOMIC_SCOPE: ContextVar[Optional[Tuple[Any, Any]]] = ContextVar("bookledger_atomic_scope", default=None)


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def insert_atomic(self, records: RecordBatch) -> None:
        """Insert (table, record_id, data) records so they become visible together or not at all"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def update_fields(self, table: str, record_id: str, changes: Dict[str, Any],
                            precondition: Optional[Dict[str, Any]] = None) -> bool:
        """Set fields on one record, guarded by an optional precondition"""
        pass

    @abstractmethod
    async def update_where(self, table: str, query: Query, changes: Dict[str, Any]) -> int:
        """Set fields on every record matching the query"""
        pass

    @abstractmethod
    async def find(self, table: str, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        """Find records matching a query; returns (page, total matches)"""
        pass

    @abstractmethod
    async def aggregate(self, table: str, query: Query, field_path: FieldPath) -> Tuple[int, int]:
        """Integer sum of a field over the (paged) matches; returns (sum, count)"""
        pass

    @abstractmethod
    async def distinct(self, table: str, field_path: FieldPath,
                       query: Optional[Query] = None) -> List[Any]:
        """Distinct non-null values of a field"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def atomic(self):
        """Async context manager grouping writes into one atomic unit"""
        pass

    async def update_field(self, table: str, record_id: str, field_name: str, value: Any,
                           precondition: Optional[Dict[str, Any]] = None) -> bool:
        """Conditional single-field update"""
        return await self.update_fields(table, record_id, {field_name: value}, precondition)

    async def create_index(self, table: str, fields: Sequence[FieldPath]) -> None:
        """Create a secondary index (default no-op)"""
        pass

    async def initialize(self) -> None:
        """Prepare connections (default no-op)"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


class AsyncStorageAdapter(AsyncStorageInterface):
    """
    Async wrapper around a sync StorageInterface.

    Every call runs in a worker thread behind one asyncio lock, and an
    atomic scope holds that lock until it commits, so readers never see
    a half-applied unit of work.
    """

    def __init__(self, storage: Optional[StorageInterface] = None):
        self._sync_storage = storage if storage is not None else InMemoryStorage()
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def sync_storage(self) -> StorageInterface:
        return self._sync_storage

    def _in_scope(self) -> bool:
        scope = _ATOMIC_SCOPE.get()
        return scope is not None and scope[0] is self

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailableError("storage is closed")

    async def _run(self, func, *args):
        self._check_open()
        if self._in_scope():
            return await asyncio.to_thread(func, *args)
        async with self._lock:
            # Run sync operation in thread pool to avoid blocking
            return await asyncio.to_thread(func, *args)

    @asynccontextmanager
    async def atomic(self):
        """Hold the storage lock for the whole unit of work"""
        self._check_open()
        if self._in_scope():
            yield
            return
        async with self._lock:
            token = _ATOMIC_SCOPE.set((self, None))
            try:
                await asyncio.to_thread(self._sync_storage.begin_transaction)
                try:
                    yield
                except BaseException:
                    await asyncio.to_thread(self._sync_storage.rollback)
                    raise
                await asyncio.to_thread(self._sync_storage.commit)
            finally:
                _ATOMIC_SCOPE.reset(token)

    async def insert_atomic(self, records: RecordBatch) -> None:
        await self._run(self._sync_storage.insert_atomic, list(records))

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._sync_storage.load, table, record_id)

    async def update_fields(self, table: str, record_id: str, changes: Dict[str, Any],
                            precondition: Optional[Dict[str, Any]] = None) -> bool:
        return await self._run(self._sync_storage.update_fields, table, record_id, changes, precondition)

    async def update_where(self, table: str, query: Query, changes: Dict[str, Any]) -> int:
        return await self._run(self._sync_storage.update_where, table, query, changes)

    async def find(self, table: str, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        return await self._run(self._sync_storage.find, table, query)

    async def aggregate(self, table: str, query: Query, field_path: FieldPath) -> Tuple[int, int]:
        return await self._run(self._sync_storage.aggregate, table, query, field_path)

    async def distinct(self, table: str, field_path: FieldPath,
                       query: Optional[Query] = None) -> List[Any]:
        return await self._run(self._sync_storage.distinct, table, field_path, query)

    async def count(self, table: str) -> int:
        return await self._run(self._sync_storage.count, table)

    async def clear_table(self, table: str) -> None:
        await self._run(self._sync_storage.clear_table, table)

    async def create_index(self, table: str, fields: Sequence[FieldPath]) -> None:
        await self._run(self._sync_storage.create_index, table, list(fields))

    async def close(self) -> None:
        """Close storage connection"""
        if self._closed:
            return
        async with self._lock:
            await asyncio.to_thread(self._sync_storage.close)
            self._closed = True


class _Params:
    """Collects positional asyncpg parameters and hands out $n placeholders"""

    def __init__(self):
        self.values: List[Any] = []

    def add(self, value: Any) -> str:
        self.values.append(value)
        return f"${len(self.values)}"


class AsyncPostgreSQLStorage(AsyncStorageInterface):
    """True async PostgreSQL using asyncpg"""

    def __init__(self, connection_string: str, pool_size: int = 10, command_timeout: float = 60):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self.pool = None
        self._tables = set()

    async def initialize(self):
        """Create connection pool - call on app startup"""
        if self.pool is not None:
            return
        import asyncpg
        self.pool = await asyncpg.create_pool(
            self.connection_string,
            min_size=min(2, self.pool_size),
            max_size=self.pool_size,
            command_timeout=self.command_timeout
        )
        logger.info("PostgreSQL pool created (max_size=%s)", self.pool_size)

    async def close(self):
        """Close pool - call on app shutdown"""
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _scope_connection(self):
        scope = _ATOMIC_SCOPE.get()
        if scope is not None and scope[0] is self:
            return scope[1]
        return None

    @asynccontextmanager
    async def _connection(self):
        """Connection of the current atomic scope, or a pooled one"""
        if not self.pool:
            raise StoreUnavailableError("Pool not initialized. Call initialize() first.")
        conn = self._scope_connection()
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def atomic(self):
        """Run the enclosed operations in one PostgreSQL transaction"""
        if self._scope_connection() is not None:
            yield
            return
        if not self.pool:
            raise StoreUnavailableError("Pool not initialized. Call initialize() first.")
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                token = _ATOMIC_SCOPE.set((self, conn))
                try:
                    yield
                finally:
                    _ATOMIC_SCOPE.reset(token)

    async def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        validate_table_name(table)
        if table in self._tables:
            return
        async with self._connection() as conn:
            await conn.execute(f'''
                CREATE TABLE IF NOT EXISTS "{table}" (
                    seq BIGSERIAL,
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
                )
            ''')
        # A table created inside an atomic scope vanishes if the scope rolls back
        if self._scope_connection() is None:
            self._tables.add(table)

    @staticmethod
    def _path(path: FieldPath) -> str:
        return "'{" + ",".join(field_parts(path)) + "}'"

    @classmethod
    def _text(cls, path: FieldPath) -> str:
        # C collation keeps ISO-8601 strings in chronological order
        return f'(data #>> {cls._path(path)}) COLLATE "C"'

    @classmethod
    def _where(cls, query: Query, params: _Params) -> str:
        """Translate query conditions to a JSONB WHERE clause"""
        conditions = []

        for path, expected in query.equals.items():
            if expected is None:
                conditions.append(f"(data #> {cls._path(path)} IS NULL OR data #> {cls._path(path)} = 'null'::jsonb)")
            else:
                conditions.append(f"data #> {cls._path(path)} = {params.add(json.dumps(expected))}::jsonb")

        for path, candidates in query.one_of.items():
            encoded = [json.dumps(c) for c in candidates]
            conditions.append(f"data #> {cls._path(path)} = ANY({params.add(encoded)}::jsonb[])")

        for path, prefixes in query.prefixes.items():
            if not prefixes:
                conditions.append("FALSE")
                continue
            expr = cls._text(path)
            alternatives = []
            for prefix in prefixes:
                head = prefix + query.delimiter
                alternatives.append(
                    f"({expr} = {params.add(prefix)} OR "
                    f"left(data #>> {cls._path(path)}, {params.add(len(head))}) = {params.add(head)})"
                )
            conditions.append("(" + " OR ".join(alternatives) + ")")

        for path, (low, high) in query.ranges.items():
            if low is not None:
                conditions.append(f"{cls._text(path)} >= {params.add(low)}")
            if high is not None:
                conditions.append(f"{cls._text(path)} <= {params.add(high)}")

        return " AND ".join(conditions) if conditions else "TRUE"

    @classmethod
    def _order_and_page(cls, query: Query, params: _Params) -> str:
        order = [
            f"{cls._text(path)} {'ASC' if direction == ASCENDING else 'DESC'}"
            for path, direction in query.sort
        ]
        order.append("seq ASC")
        return (
            f"ORDER BY {', '.join(order)} "
            f"LIMIT {params.add(query.limit)}::bigint OFFSET {params.add(query.offset)}::bigint"
        )

    @staticmethod
    def _decode(data: Any) -> Dict[str, Any]:
        if isinstance(data, str):
            return json.loads(data)
        return dict(data)

    async def insert_atomic(self, records: RecordBatch) -> None:
        """Insert all records inside one transaction"""
        records = list(records)
        for table, _, _ in records:
            await self._ensure_table(table)
        async with self.atomic():
            async with self._connection() as conn:
                for table, record_id, data in records:
                    await conn.execute(
                        f'INSERT INTO "{table}" (id, data) VALUES ($1, $2::jsonb)',
                        record_id, json.dumps(data, default=str)
                    )

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            row = await conn.fetchrow(f'SELECT data FROM "{table}" WHERE id = $1', record_id)
            if row:
                return self._decode(row['data'])
            return None

    async def update_fields(self, table: str, record_id: str, changes: Dict[str, Any],
                            precondition: Optional[Dict[str, Any]] = None) -> bool:
        """Conditional UPDATE; row locks serialize concurrent guarded writers"""
        if not changes:
            return False
        for key in changes:
            field_parts(key)
        await self._ensure_table(table)
        params = _Params()
        patch = params.add(json.dumps(changes, default=str))
        id_param = params.add(record_id)
        where_clause = self._where(Query(equals=dict(precondition or {})), params)
        async with self._connection() as conn:
            status = await conn.execute(f'''
                UPDATE "{table}" SET data = data || {patch}::jsonb, updated_at = NOW()
                WHERE id = {id_param} AND {where_clause}
            ''', *params.values)
        return _affected(status) > 0

    async def update_where(self, table: str, query: Query, changes: Dict[str, Any]) -> int:
        """UPDATE every matching record"""
        if not changes:
            return 0
        for key in changes:
            field_parts(key)
        await self._ensure_table(table)
        params = _Params()
        patch = params.add(json.dumps(changes, default=str))
        where_clause = self._where(query, params)
        async with self._connection() as conn:
            status = await conn.execute(f'''
                UPDATE "{table}" SET data = data || {patch}::jsonb, updated_at = NOW()
                WHERE {where_clause}
            ''', *params.values)
        return _affected(status)

    async def find(self, table: str, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        """Find records matching a query"""
        await self._ensure_table(table)
        count_params = _Params()
        count_where = self._where(query, count_params)
        params = _Params()
        where_clause = self._where(query, params)
        tail = self._order_and_page(query, params)
        async with self._connection() as conn:
            total = await conn.fetchval(
                f'SELECT COUNT(*) FROM "{table}" WHERE {count_where}', *count_params.values
            )
            rows = await conn.fetch(
                f'SELECT data FROM "{table}" WHERE {where_clause} {tail}', *params.values
            )
        return [self._decode(row['data']) for row in rows], int(total)

    async def aggregate(self, table: str, query: Query, field_path: FieldPath) -> Tuple[int, int]:
        """SUM and COUNT over the matching page"""
        await self._ensure_table(table)
        params = _Params()
        where_clause = self._where(query, params)
        tail = self._order_and_page(query, params)
        async with self._connection() as conn:
            row = await conn.fetchrow(f'''
                SELECT COALESCE(SUM(value), 0) AS total, COUNT(*) AS count FROM (
                    SELECT (data #>> {self._path(field_path)})::numeric AS value
                    FROM "{table}" WHERE {where_clause} {tail}
                ) AS page
            ''', *params.values)
        return int(row['total']), int(row['count'])

    async def distinct(self, table: str, field_path: FieldPath,
                       query: Optional[Query] = None) -> List[Any]:
        """Distinct values of a JSON field"""
        await self._ensure_table(table)
        params = _Params()
        where_clause = self._where(query or Query(), params)
        async with self._connection() as conn:
            rows = await conn.fetch(f'''
                SELECT DISTINCT data #> {self._path(field_path)} AS value FROM "{table}"
                WHERE {where_clause} AND data #> {self._path(field_path)} IS NOT NULL
            ''', *params.values)
        values = [self._decode_scalar(row['value']) for row in rows]
        return [value for value in values if value is not None]

    @staticmethod
    def _decode_scalar(value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value

    async def count(self, table: str) -> int:
        """Count records in table"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            return int(await conn.fetchval(f'SELECT COUNT(*) FROM "{table}"'))

    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            await conn.execute(f'DELETE FROM "{table}"')

    async def create_index(self, table: str, fields: Sequence[FieldPath]) -> None:
        """Create an expression index over JSONB fields"""
        await self._ensure_table(table)
        names = "_".join("_".join(field_parts(f)) for f in fields).replace("-", "_")
        columns = ", ".join(f"({self._text(f)})" for f in fields)
        async with self._connection() as conn:
            await conn.execute(f'CREATE INDEX IF NOT EXISTS "idx_{table}_{names}" ON "{table}" ({columns})')


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as 'UPDATE 3'"""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def create_async_storage(config=None) -> AsyncStorageInterface:
    """Factory function to create async storage instances from configuration"""
    if config is None:
        from .config import get_config
        config = get_config()

    storage_type = config.storage_type.lower()

    if storage_type == "postgresql":
        if not config.database_url:
            raise ValueError("database_url is required for PostgreSQL storage")
        return AsyncPostgreSQLStorage(
            config.database_url,
            pool_size=config.database_pool_size,
            command_timeout=config.database_command_timeout
        )
    if storage_type == "sqlite":
        return AsyncStorageAdapter(SQLiteStorage(config.sqlite_path))
    if storage_type == "memory":
        return AsyncStorageAdapter(InMemoryStorage())
    raise ValueError(f"Unknown storage type: {config.storage_type}")
