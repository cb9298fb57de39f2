"""PostgreSQL implementation of the flow store."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..clock import Clock, SystemClock
from ..errors import FlowConflictError, StorageFailureError
from .models import FlowFailure, FlowRecord, FlowStatus
from .store import FlowStore

_COLUMNS = "flow_id, flow_type, status, metadata, result, error, created_at, expires_at"


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


class PostgresFlowStore(FlowStore):
    """Persist flow state using PostgreSQL.

    Creation and transitions are single conditional statements, so the
    database row is the point of linearization across processes.
    """

    def __init__(self, dsn: str, clock: Clock | None = None):
        self._dsn = dsn
        self._clock = clock or SystemClock()
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self._connect()
        except (OSError, asyncpg.PostgresError) as exc:
            raise StorageFailureError(f"PostgreSQL unavailable: {exc}") from exc
        try:
            yield conn
        except asyncpg.PostgresError as exc:
            raise StorageFailureError(f"PostgreSQL query failed: {exc}") from exc
        finally:
            await conn.close()

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flows (
                flow_id TEXT NOT NULL,
                flow_type TEXT NOT NULL,
                status TEXT NOT NULL,
                metadata JSONB NOT NULL,
                result JSONB,
                error JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                expires_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (flow_id, flow_type)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_flows_expires_at ON flows (expires_at)"
        )

    @staticmethod
    def _to_record(row: asyncpg.Record) -> FlowRecord:
        return FlowRecord(
            flow_id=row["flow_id"],
            flow_type=row["flow_type"],
            status=FlowStatus(row["status"]),
            metadata=json.loads(row["metadata"]),
            result=json.loads(row["result"]) if row["result"] is not None else None,
            error=FlowFailure.model_validate_json(row["error"]) if row["error"] else None,
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    # ------------------------------------------------------------------
    async def put(self, record: FlowRecord, overwrite: bool = False) -> None:
        # An expired row under the same key is replaced; a live one only when
        # overwriting.
        guard = "" if overwrite else "WHERE flows.expires_at <= $9"
        params: list[Any] = [
            record.flow_id,
            record.flow_type,
            record.status.value,
            json.dumps(record.metadata),
            _dumps(record.result),
            record.error.model_dump_json() if record.error else None,
            record.created_at,
            record.expires_at,
        ]
        if not overwrite:
            params.append(self._clock.now())
        async with self._connection() as conn:
            inserted = await conn.fetchval(
                f"""
                INSERT INTO flows ({_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (flow_id, flow_type) DO UPDATE SET
                    status = EXCLUDED.status,
                    metadata = EXCLUDED.metadata,
                    result = EXCLUDED.result,
                    error = EXCLUDED.error,
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at
                {guard}
                RETURNING flow_id
                """,
                *params,
            )
        if inserted is None:
            raise FlowConflictError(
                "Flow already exists", record.flow_id, record.flow_type
            )

    async def get(self, flow_id: str, flow_type: str) -> FlowRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM flows WHERE flow_id = $1 AND flow_type = $2 AND expires_at > $3",
                flow_id,
                flow_type,
                self._clock.now(),
            )
        return self._to_record(row) if row else None

    async def delete(self, flow_id: str, flow_type: str) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "DELETE FROM flows WHERE flow_id = $1 AND flow_type = $2",
                flow_id,
                flow_type,
            )

    async def compare_and_set(
        self, record: FlowRecord, expected_status: FlowStatus
    ) -> bool:
        async with self._connection() as conn:
            updated = await conn.fetchval(
                """
                UPDATE flows SET status = $1, result = $2, error = $3
                WHERE flow_id = $4 AND flow_type = $5 AND status = $6 AND expires_at > $7
                RETURNING flow_id
                """,
                record.status.value,
                _dumps(record.result),
                record.error.model_dump_json() if record.error else None,
                record.flow_id,
                record.flow_type,
                expected_status.value,
                self._clock.now(),
            )
        return updated is not None

    async def purge_expired(self) -> int:
        async with self._connection() as conn:
            status = await conn.execute(
                "DELETE FROM flows WHERE expires_at <= $1", self._clock.now()
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])

    async def list_records(
        self, flow_type: Optional[str] = None, include_expired: bool = False
    ) -> list[FlowRecord]:
        query = f"SELECT {_COLUMNS} FROM flows WHERE TRUE"
        params: list[Any] = []
        if flow_type is not None:
            params.append(flow_type)
            query += f" AND flow_type = ${len(params)}"
        if not include_expired:
            params.append(self._clock.now())
            query += f" AND expires_at > ${len(params)}"
        async with self._connection() as conn:
            rows = await conn.fetch(query + " ORDER BY created_at", *params)
        return [self._to_record(r) for r in rows]
