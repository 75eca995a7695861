"""PostgreSQL store implementations using asyncpg.

Records of every entity type live in one table keyed by (kind, id) with the
model serialized to JSONB. Trace events live in their own append-only table.

- Connection pooling via asyncpg.create_pool
- Compare-and-swap updates on the version column
- Increments and partial updates run under a row lock (SELECT ... FOR
  UPDATE) inside one transaction, so concurrent writers to the same record
  are serialized by the database
- Retention trimming in a single DELETE
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Type,
)

import asyncpg

from agent_ops.errors import (
    AgentOpsError,
    DatabaseError,
    InvalidArgumentError,
    NotFoundError,
    VersionConflictError,
)
from agent_ops.events.models import TraceEvent, TraceEventType
from agent_ops.store.base import ModelT, apply_changes


logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS agentops_records (
    kind TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    created_seq BIGSERIAL,
    PRIMARY KEY (kind, id)
);

CREATE TABLE IF NOT EXISTS agentops_traces (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    worker_id TEXT,
    work_item_id TEXT,
    event_type TEXT NOT NULL,
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    timestamp TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS agentops_traces_timestamp_idx
    ON agentops_traces (timestamp, seq);
"""


class PostgresDatabase:
    """Owns the asyncpg connection pool shared by the Postgres stores.

    Example:
        >>> async with PostgresDatabase("postgresql://...") as db:
        ...     workers = PostgresRecordStore(db, Worker, "worker")
        ...     await workers.find_all(status="idle")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            DatabaseError: If the pool is not initialized.
        """
        if self._pool is None:
            raise DatabaseError("Database pool not initialized. Call connect() first.")
        return self._pool

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """Create the connection pool and apply the schema.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", extra={"error": str(e)})
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def ping(self) -> bool:
        """Return True if a trivial query succeeds."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning("PostgreSQL ping failed", extra={"error": str(e)})
            return False

    async def __aenter__(self) -> "PostgresDatabase":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a connection with an active transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn


def _wrap(operation: str, e: Exception) -> DatabaseError:
    logger.error(f"Failed to {operation}", extra={"error": str(e)})
    return DatabaseError(f"Failed to {operation}: {e}", original_error=e)


def _filter_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


class PostgresRecordStore(Generic[ModelT]):
    """RecordStore for one entity type backed by the agentops_records table."""

    def __init__(self, database: PostgresDatabase, model: Type[ModelT], entity: str):
        self.database = database
        self.model = model
        self.entity = entity

    def _load(self, data: Any, version: int) -> ModelT:
        if isinstance(data, str):
            data = json.loads(data)
        data["version"] = version
        return self.model.model_validate(data)

    async def create(self, record: ModelT) -> ModelT:
        try:
            async with self.database.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO agentops_records (kind, id, data, version)
                    VALUES ($1, $2, $3::jsonb, $4)
                    """,
                    self.entity,
                    record.id,
                    record.model_dump_json(),
                    record.version,
                )
            return record
        except asyncpg.UniqueViolationError as e:
            raise InvalidArgumentError(
                f"{self.entity} with id {record.id} already exists"
            ) from e
        except AgentOpsError:
            raise
        except Exception as e:
            raise _wrap(f"create {self.entity}", e) from e

    async def find_by_id(self, record_id: str) -> Optional[ModelT]:
        try:
            async with self.database.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT data, version FROM agentops_records WHERE kind = $1 AND id = $2",
                    self.entity,
                    record_id,
                )
        except AgentOpsError:
            raise
        except Exception as e:
            raise _wrap(f"get {self.entity}", e) from e
        if row is None:
            return None
        return self._load(row["data"], row["version"])

    async def find_all(self, **filters: Any) -> List[ModelT]:
        clauses = ["kind = $1"]
        params: List[Any] = [self.entity]
        for key, value in filters.items():
            params.append(key)
            params.append(_filter_value(value))
            clauses.append(f"data->>${len(params) - 1} = ${len(params)}")

        query = (
            "SELECT data, version FROM agentops_records WHERE "
            + " AND ".join(clauses)
            + " ORDER BY created_seq ASC"
        )
        try:
            async with self.database.pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        except AgentOpsError:
            raise
        except Exception as e:
            raise _wrap(f"list {self.entity}", e) from e
        return [self._load(row["data"], row["version"]) for row in rows]

    async def update(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> ModelT:
        return await self._locked_write(record_id, changes, None, expected_version)

    async def increment(
        self,
        record_id: str,
        deltas: Mapping[str, float],
        changes: Optional[Mapping[str, Any]] = None,
    ) -> ModelT:
        return await self._locked_write(record_id, changes or {}, deltas, None)

    async def delete(self, record_id: str) -> None:
        try:
            async with self.database.transaction() as conn:
                status = await conn.execute(
                    "DELETE FROM agentops_records WHERE kind = $1 AND id = $2",
                    self.entity,
                    record_id,
                )
        except AgentOpsError:
            raise
        except Exception as e:
            raise _wrap(f"delete {self.entity}", e) from e
        if status.endswith(" 0"):
            raise NotFoundError(self.entity, record_id)

    async def _locked_write(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        deltas: Optional[Mapping[str, float]],
        expected_version: Optional[int],
    ) -> ModelT:
        try:
            async with self.database.transaction() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT data, version FROM agentops_records
                    WHERE kind = $1 AND id = $2
                    FOR UPDATE
                    """,
                    self.entity,
                    record_id,
                )
                if row is None:
                    raise NotFoundError(self.entity, record_id)
                if expected_version is not None and row["version"] != expected_version:
                    raise VersionConflictError(record_id, expected_version)

                current = self._load(row["data"], row["version"])
                data = apply_changes(current.model_dump(), changes, deltas)
                data["version"] = current.version + 1
                updated = self.model.model_validate(data)

                await conn.execute(
                    """
                    UPDATE agentops_records
                    SET data = $3::jsonb, version = $4
                    WHERE kind = $1 AND id = $2
                    """,
                    self.entity,
                    record_id,
                    updated.model_dump_json(),
                    updated.version,
                )
            return updated
        except AgentOpsError:
            raise
        except Exception as e:
            raise _wrap(f"update {self.entity}", e) from e


class PostgresTraceStore:
    """TraceStore backed by the agentops_traces table."""

    def __init__(self, database: PostgresDatabase):
        self.database = database

    async def append(self, event: TraceEvent) -> None:
        if event.timestamp is None:
            raise InvalidArgumentError("trace event must carry a timestamp")
        try:
            async with self.database.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO agentops_traces (
                        id, worker_id, work_item_id, event_type, payload, timestamp
                    ) VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                    """,
                    event.id,
                    event.worker_id,
                    event.work_item_id,
                    event.event_type.value,
                    json.dumps(event.payload, default=str),
                    event.timestamp,
                )
        except AgentOpsError:
            raise
        except Exception as e:
            raise _wrap("append trace event", e) from e

    async def trim(self, keep: int) -> int:
        try:
            async with self.database.pool.acquire() as conn:
                status = await conn.execute(
                    """
                    DELETE FROM agentops_traces
                    WHERE seq IN (
                        SELECT seq FROM agentops_traces
                        ORDER BY timestamp DESC, seq DESC
                        OFFSET $1
                    )
                    """,
                    keep,
                )
        except AgentOpsError:
            raise
        except Exception as e:
            raise _wrap("trim trace events", e) from e
        return int(status.split()[-1])

    async def query(
        self,
        worker_id: Optional[str] = None,
        work_item_id: Optional[str] = None,
        event_type: Optional[TraceEventType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[TraceEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, op, value in (
            ("worker_id", "=", worker_id),
            ("work_item_id", "=", work_item_id),
            ("event_type", "=", event_type.value if event_type else None),
            ("timestamp", ">=", start),
            ("timestamp", "<=", end),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} {op} ${len(params)}")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        query = f"""
            SELECT id, worker_id, work_item_id, event_type, payload, timestamp
            FROM agentops_traces
            {where}
            ORDER BY timestamp DESC, seq DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
        """
        try:
            async with self.database.pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        except AgentOpsError:
            raise
        except Exception as e:
            raise _wrap("query trace events", e) from e
        return [self._row_to_event(row) for row in rows]

    async def count(self) -> int:
        try:
            async with self.database.pool.acquire() as conn:
                return await conn.fetchval("SELECT COUNT(*) FROM agentops_traces")
        except AgentOpsError:
            raise
        except Exception as e:
            raise _wrap("count trace events", e) from e

    @staticmethod
    def _row_to_event(row: Mapping[str, Any]) -> TraceEvent:
        payload: Dict[str, Any] = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        timestamp = row["timestamp"]
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return TraceEvent(
            id=row["id"],
            worker_id=row["worker_id"],
            work_item_id=row["work_item_id"],
            event_type=TraceEventType(row["event_type"]),
            payload=payload or {},
            timestamp=timestamp,
        )
