"""
PostgreSQL storage adapter for the job runtime.

PostgresJobStore implements both JobStore and IdempotencyIndex on one
asyncpg pool, so several coordinator processes can share one queue:
- compare_and_swap runs ``SELECT ... FOR UPDATE`` and the UPDATE in a
  single transaction
- reserve_or_get serializes per key with a transaction-scoped advisory lock
  and creates the job in the same transaction as the key mapping

Timestamps are stored as epoch seconds (DOUBLE PRECISION) exactly as the
engine's clock produces them.

Requires asyncpg to be installed: pip install asyncpg
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

try:
    import asyncpg
    ASYNCPG_AVAILABLE = True
except ImportError:
    asyncpg = None  # type: ignore
    ASYNCPG_AVAILABLE = False

from ..errors import (
    ConflictError,
    ErrorContext,
    JobAlreadyExistsError,
    JobNotFoundError,
    StoreUnavailableError,
)
from ..jobs.store import IdempotencyIndex, JobFactory, JobStore, Mutator
from ..jobs.types import ErrorInfo, JobFilter, JobRecord, JobState, decode_payload, encode_payload

_ORDERABLE = {"submitted_at", "updated_at", "terminal_at", "expires_at", "job_id", "type", "state"}

_COLUMNS = (
    "job_id",
    "type",
    "state",
    "progress",
    "input",
    "output",
    "error",
    "idempotency_key",
    "correlation_id",
    "retry_count",
    "max_retries",
    "submitted_at",
    "updated_at",
    "started_at",
    "terminal_at",
    "expires_at",
    "visible_at",
    "owner_token",
    "heartbeat_at",
    "lease_expires_at",
    "cancelled_by",
    "version",
)


def _require_asyncpg() -> None:
    """Raise ImportError if asyncpg is not available."""
    if not ASYNCPG_AVAILABLE:
        raise ImportError(
            "PostgreSQL storage requires asyncpg. "
            "Install with: pip install asyncpg"
        )


def _sanitize_table_name(name: str) -> str:
    """Ensure the table name is safe for SQL interpolation."""
    if not name:
        raise ValueError("table_name cannot be empty")
    if not re.fullmatch(r"[a-zA-Z_][a-zA-Z0-9_]*", name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(encode_payload(value))


def _load_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        value = json.loads(value)
    return decode_payload(value)


def _rows_affected(status: str) -> int:
    """Parse asyncpg command status such as ``'DELETE 3'``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresJobStore(JobStore, IdempotencyIndex):
    """PostgreSQL implementation of JobStore and IdempotencyIndex.

    Tables (``<t>`` is the configured table name):
    - ``<t>``: one row per job, JSONB payloads
    - ``<t>_idempotency``: key -> job_id
    - ``<t>_tombstones``: ids of deleted jobs and when they were deleted
    """

    TABLE_NAME = "jobs"

    def __init__(
        self,
        pool: Any,  # asyncpg.Pool
        table_name: str | None = None,
        *,
        owns_pool: bool = False,
    ):
        _require_asyncpg()
        self._pool = pool
        self._owns_pool = owns_pool
        self._table = _sanitize_table_name(table_name or self.TABLE_NAME)
        self._idem = f"{self._table}_idempotency"
        self._tomb = f"{self._table}_tombstones"
        self._ensured = False
        self._lock = asyncio.Lock()

    @classmethod
    async def connect(
        cls,
        dsn: str,
        table_name: str | None = None,
        *,
        min_size: int = 1,
        max_size: int = 10,
    ) -> PostgresJobStore:
        """Create a pool for ``dsn`` and a store that closes it on ``close()``."""
        _require_asyncpg()
        try:
            pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StoreUnavailableError(f"Cannot connect to PostgreSQL: {exc}", cause=exc) from exc
        return cls(pool, table_name, owns_pool=True)

    async def close(self) -> None:
        if self._owns_pool and self._pool is not None:
            await self._pool.close()

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        """Acquire a connection; infrastructure failures become StoreUnavailableError."""
        await self._ensure_table()
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as exc:
            raise StoreUnavailableError(f"PostgreSQL unavailable: {exc}", cause=exc) from exc

    async def _ensure_table(self) -> None:
        """Create the tables if they don't exist."""
        if self._ensured:
            return
        async with self._lock:
            if self._ensured:
                return

            ddl = f'''
            CREATE TABLE IF NOT EXISTS "{self._table}" (
                job_id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'queued',
                progress INTEGER,
                input JSONB,
                output JSONB,
                error JSONB,
                idempotency_key TEXT,
                correlation_id TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                submitted_at DOUBLE PRECISION NOT NULL,
                updated_at DOUBLE PRECISION NOT NULL,
                started_at DOUBLE PRECISION,
                terminal_at DOUBLE PRECISION,
                expires_at DOUBLE PRECISION,
                visible_at DOUBLE PRECISION NOT NULL DEFAULT 0,
                owner_token TEXT,
                heartbeat_at DOUBLE PRECISION,
                lease_expires_at DOUBLE PRECISION,
                cancelled_by TEXT,
                version INTEGER NOT NULL DEFAULT 1
            );
            CREATE INDEX IF NOT EXISTS "{self._table}_pending_idx" ON "{self._table}" (state, visible_at, submitted_at);
            CREATE INDEX IF NOT EXISTS "{self._table}_expires_at_idx" ON "{self._table}" (expires_at);
            CREATE INDEX IF NOT EXISTS "{self._table}_lease_idx" ON "{self._table}" (state, lease_expires_at);
            CREATE TABLE IF NOT EXISTS "{self._idem}" (
                key TEXT PRIMARY KEY,
                job_id TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS "{self._tomb}" (
                job_id TEXT PRIMARY KEY,
                deleted_at DOUBLE PRECISION NOT NULL
            );
            CREATE INDEX IF NOT EXISTS "{self._tomb}_deleted_at_idx" ON "{self._tomb}" (deleted_at)
            '''

            try:
                async with self._pool.acquire() as conn:
                    for stmt in [s.strip() for s in ddl.split(";") if s.strip()]:
                        await conn.execute(stmt)
            except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as exc:
                raise StoreUnavailableError(f"PostgreSQL unavailable: {exc}", cause=exc) from exc

            self._ensured = True

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _job_to_row(self, job: JobRecord) -> dict[str, Any]:
        """Convert JobRecord to database row."""
        return {
            "job_id": job.job_id,
            "type": job.type,
            "state": job.state.value,
            "progress": job.progress,
            "input": _dump_json(job.input),
            "output": _dump_json(job.output),
            "error": json.dumps(job.error.to_dict()) if job.error else None,
            "idempotency_key": job.idempotency_key,
            "correlation_id": job.correlation_id,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "submitted_at": job.submitted_at,
            "updated_at": job.updated_at,
            "started_at": job.started_at,
            "terminal_at": job.terminal_at,
            "expires_at": job.expires_at,
            "visible_at": job.visible_at,
            "owner_token": job.owner_token,
            "heartbeat_at": job.heartbeat_at,
            "lease_expires_at": job.lease_expires_at,
            "cancelled_by": job.cancelled_by,
            "version": job.version,
        }

    def _row_to_job(self, row: Any) -> JobRecord:
        """Convert database row to JobRecord."""
        error = _load_json(row["error"])
        return JobRecord(
            job_id=row["job_id"],
            type=row["type"],
            state=JobState(row["state"]),
            progress=row["progress"],
            input=_load_json(row["input"]),
            output=_load_json(row["output"]),
            error=ErrorInfo.from_dict(error) if error else None,
            idempotency_key=row["idempotency_key"],
            correlation_id=row["correlation_id"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            submitted_at=row["submitted_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            terminal_at=row["terminal_at"],
            expires_at=row["expires_at"],
            visible_at=row["visible_at"],
            owner_token=row["owner_token"],
            heartbeat_at=row["heartbeat_at"],
            lease_expires_at=row["lease_expires_at"],
            cancelled_by=row["cancelled_by"],
            version=row["version"],
        )

    async def _insert(self, conn: Any, job: JobRecord) -> JobRecord:
        job = job.replace(version=1)
        row = self._job_to_row(job)
        placeholders = [f"${i + 1}" for i in range(len(_COLUMNS))]
        q = f'''
        INSERT INTO "{self._table}" ({", ".join(_COLUMNS)})
        VALUES ({", ".join(placeholders)})
        '''
        try:
            await conn.execute(q, *(row[c] for c in _COLUMNS))
        except asyncpg.UniqueViolationError as exc:
            raise JobAlreadyExistsError(
                f"Job {job.job_id} already exists",
                context=ErrorContext(job_id=job.job_id, job_type=job.type),
                cause=exc,
            ) from exc
        return job

    # ------------------------------------------------------------------
    # JobStore
    # ------------------------------------------------------------------

    async def create(self, job: JobRecord) -> JobRecord:
        async with self._connection() as conn:
            return await self._insert(conn, job)

    async def get(self, job_id: str) -> JobRecord | None:
        q = f'SELECT * FROM "{self._table}" WHERE job_id = $1'
        async with self._connection() as conn:
            row = await conn.fetchrow(q, job_id)
        return self._row_to_job(row) if row is not None else None

    async def compare_and_swap(
        self,
        job_id: str,
        expected_state: JobState,
        mutator: Mutator,
        *,
        expected_owner: str | None = None,
    ) -> JobRecord:
        select = f'SELECT * FROM "{self._table}" WHERE job_id = $1 FOR UPDATE'
        columns = [c for c in _COLUMNS if c != "job_id"]
        set_clause = ", ".join(f"{col} = ${i + 2}" for i, col in enumerate(columns))
        update = f'UPDATE "{self._table}" SET {set_clause} WHERE job_id = $1'

        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(select, job_id)
                if row is None:
                    raise JobNotFoundError(job_id=job_id)
                current = self._row_to_job(row)
                if current.state != expected_state:
                    raise ConflictError(
                        job_id=job_id,
                        expected_state=expected_state.value,
                        actual_state=current.state.value,
                    )
                if expected_owner is not None and current.owner_token != expected_owner:
                    raise ConflictError(f"Job {job_id} is owned by another worker", job_id=job_id)

                updated = mutator(current)
                if updated.job_id != job_id:
                    raise ValueError("mutator must not change job_id")
                updated = updated.replace(version=current.version + 1)
                values = self._job_to_row(updated)
                await conn.execute(update, job_id, *(values[c] for c in columns))
        return updated

    async def list_pending(
        self,
        limit: int,
        *,
        now: float,
        types: set[str] | None = None,
    ) -> list[JobRecord]:
        params: list[Any] = [JobState.QUEUED.value, now]
        q = f'SELECT * FROM "{self._table}" WHERE state = $1 AND visible_at <= $2'
        if types is not None:
            params.append(sorted(types))
            q += f" AND type = ANY(${len(params)}::text[])"
        params.append(limit)
        q += f" ORDER BY submitted_at, job_id LIMIT ${len(params)}"
        async with self._connection() as conn:
            rows = await conn.fetch(q, *params)
        return [self._row_to_job(r) for r in rows]

    async def delete(self, job_id: str, *, tombstone: bool = True) -> bool:
        q = f'DELETE FROM "{self._table}" WHERE job_id = $1 RETURNING expires_at, updated_at'
        tomb = f'''
        INSERT INTO "{self._tomb}" (job_id, deleted_at) VALUES ($1, $2)
        ON CONFLICT (job_id) DO NOTHING
        '''
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(q, job_id)
                if row is None:
                    return False
                if tombstone:
                    await conn.execute(tomb, job_id, row["expires_at"] or row["updated_at"])
        return True

    def _where(self, filter: JobFilter | None) -> tuple[str, list[Any]]:
        conditions: list[str] = []
        params: list[Any] = []
        if filter:
            if filter.state:
                states = filter.state if isinstance(filter.state, set) else {filter.state}
                params.append(sorted(s.value for s in states))
                conditions.append(f"state = ANY(${len(params)}::text[])")
            if filter.type:
                params.append(filter.type)
                conditions.append(f"type = ${len(params)}")
            if filter.idempotency_key:
                params.append(filter.idempotency_key)
                conditions.append(f"idempotency_key = ${len(params)}")
            if filter.submitted_before is not None:
                params.append(filter.submitted_before)
                conditions.append(f"submitted_at < ${len(params)}")
        clause = " WHERE " + " AND ".join(conditions) if conditions else ""
        return clause, params

    async def list(self, filter: JobFilter | None = None) -> list[JobRecord]:
        clause, params = self._where(filter)
        q = f'SELECT * FROM "{self._table}"{clause}'
        if filter:
            order_by = filter.order_by if filter.order_by in _ORDERABLE else "submitted_at"
            order_dir = "DESC" if filter.order_desc else "ASC"
            q += f" ORDER BY {order_by} {order_dir}"
            q += f" LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}"
            params.extend([filter.limit, filter.offset])
        else:
            q += " ORDER BY submitted_at"
        async with self._connection() as conn:
            rows = await conn.fetch(q, *params)
        return [self._row_to_job(r) for r in rows]

    async def count(self, filter: JobFilter | None = None) -> int:
        clause, params = self._where(filter)
        q = f'SELECT COUNT(*) FROM "{self._table}"{clause}'
        async with self._connection() as conn:
            return await conn.fetchval(q, *params)

    async def list_expired(self, now: float, limit: int) -> list[JobRecord]:
        q = f'''
        SELECT * FROM "{self._table}"
        WHERE expires_at IS NOT NULL AND expires_at <= $1
        ORDER BY expires_at LIMIT $2
        '''
        async with self._connection() as conn:
            rows = await conn.fetch(q, now, limit)
        return [self._row_to_job(r) for r in rows]

    async def list_expired_leases(self, now: float, limit: int) -> list[JobRecord]:
        q = f'''
        SELECT * FROM "{self._table}"
        WHERE state = $1 AND lease_expires_at IS NOT NULL AND lease_expires_at <= $2
        ORDER BY lease_expires_at LIMIT $3
        '''
        async with self._connection() as conn:
            rows = await conn.fetch(q, JobState.RUNNING.value, now, limit)
        return [self._row_to_job(r) for r in rows]

    async def is_tombstoned(self, job_id: str) -> bool:
        q = f'SELECT 1 FROM "{self._tomb}" WHERE job_id = $1'
        async with self._connection() as conn:
            return await conn.fetchval(q, job_id) is not None

    async def purge_tombstones(self, older_than: float) -> int:
        q = f'DELETE FROM "{self._tomb}" WHERE deleted_at < $1'
        async with self._connection() as conn:
            return _rows_affected(await conn.execute(q, older_than))

    # ------------------------------------------------------------------
    # IdempotencyIndex
    # ------------------------------------------------------------------

    async def reserve_or_get(
        self,
        key: str,
        job_factory: JobFactory,
        *,
        now: float,
    ) -> tuple[JobRecord, bool]:
        lookup = f'''
        SELECT j.* FROM "{self._idem}" k
        JOIN "{self._table}" j ON j.job_id = k.job_id
        WHERE k.key = $1
        '''
        upsert = f'''
        INSERT INTO "{self._idem}" (key, job_id) VALUES ($1, $2)
        ON CONFLICT (key) DO UPDATE SET job_id = EXCLUDED.job_id
        '''
        async with self._connection() as conn:
            async with conn.transaction():
                # Serializes concurrent reservations of the same key.
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)
                row = await conn.fetchrow(lookup, key)
                if row is not None:
                    existing = self._row_to_job(row)
                    if not existing.is_expired(now):
                        return existing, False

                job = job_factory()
                if job.idempotency_key != key:
                    job = job.replace(idempotency_key=key)
                job = await self._insert(conn, job)
                await conn.execute(upsert, key, job.job_id)
        return job, True

    async def lookup(self, key: str) -> str | None:
        q = f'SELECT job_id FROM "{self._idem}" WHERE key = $1'
        async with self._connection() as conn:
            return await conn.fetchval(q, key)

    async def release(self, key: str, job_id: str) -> bool:
        q = f'DELETE FROM "{self._idem}" WHERE key = $1 AND job_id = $2'
        async with self._connection() as conn:
            return _rows_affected(await conn.execute(q, key, job_id)) > 0


__all__ = ["PostgresJobStore"]
