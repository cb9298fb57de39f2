"""SQLite implementation of the flow store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..clock import Clock, SystemClock
from ..errors import FlowConflictError, StorageFailureError
from .models import FlowFailure, FlowRecord, FlowStatus
from .store import FlowStore

_COLUMNS = "flow_id, flow_type, status, metadata, result, error, created_at, expires_at"


def _ts(value: datetime) -> float:
    return value.timestamp()


def _from_ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SQLiteFlowStore(FlowStore):
    """Persist flow state using SQLite.

    Timestamps are stored as epoch seconds so expiry can be checked in SQL.
    A process-wide lock serialises access to the shared connection.
    """

    def __init__(self, db_path: str | Path, clock: Clock | None = None):
        self.db_path = str(db_path)
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS flows (
                    flow_id TEXT NOT NULL,
                    flow_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    result TEXT,
                    error TEXT,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL,
                    PRIMARY KEY (flow_id, flow_type)
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_flows_expires_at ON flows (expires_at)"
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    @staticmethod
    def _params(record: FlowRecord) -> tuple[Any, ...]:
        return (
            record.flow_id,
            record.flow_type,
            record.status.value,
            json.dumps(record.metadata),
            json.dumps(record.result) if record.result is not None else None,
            record.error.model_dump_json() if record.error else None,
            _ts(record.created_at),
            _ts(record.expires_at),
        )

    @staticmethod
    def _to_record(row: sqlite3.Row) -> FlowRecord:
        return FlowRecord(
            flow_id=row["flow_id"],
            flow_type=row["flow_type"],
            status=FlowStatus(row["status"]),
            metadata=json.loads(row["metadata"]),
            result=json.loads(row["result"]) if row["result"] is not None else None,
            error=FlowFailure.model_validate_json(row["error"]) if row["error"] else None,
            created_at=_from_ts(row["created_at"]),
            expires_at=_from_ts(row["expires_at"]),
        )

    def _put(self, record: FlowRecord, overwrite: bool, now: float) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    "DELETE FROM flows WHERE flow_id = ? AND flow_type = ? AND expires_at <= ?",
                    (record.flow_id, record.flow_type, now),
                )
                verb = "INSERT OR REPLACE" if overwrite else "INSERT"
                self._conn.execute(
                    f"{verb} INTO flows ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    self._params(record),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise FlowConflictError(
                    "Flow already exists", record.flow_id, record.flow_type
                ) from exc
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageFailureError(f"SQLite put failed: {exc}") from exc

    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.execute(query, params)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageFailureError(f"SQLite write failed: {exc}") from exc
            return cur.rowcount

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.Error as exc:
                raise StorageFailureError(f"SQLite read failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Store API
    async def put(self, record: FlowRecord, overwrite: bool = False) -> None:
        await asyncio.to_thread(
            self._put, record, overwrite, _ts(self._clock.now())
        )

    async def get(self, flow_id: str, flow_type: str) -> FlowRecord | None:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM flows WHERE flow_id = ? AND flow_type = ? AND expires_at > ?",
            flow_id,
            flow_type,
            _ts(self._clock.now()),
        )
        return self._to_record(rows[0]) if rows else None

    async def delete(self, flow_id: str, flow_type: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM flows WHERE flow_id = ? AND flow_type = ?",
            flow_id,
            flow_type,
        )

    async def compare_and_set(
        self, record: FlowRecord, expected_status: FlowStatus
    ) -> bool:
        _, _, status, _, result, error, _, _ = self._params(record)
        changed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE flows SET status = ?, result = ?, error = ?
            WHERE flow_id = ? AND flow_type = ? AND status = ? AND expires_at > ?
            """,
            status,
            result,
            error,
            record.flow_id,
            record.flow_type,
            expected_status.value,
            _ts(self._clock.now()),
        )
        return changed == 1

    async def purge_expired(self) -> int:
        return await asyncio.to_thread(
            self._execute,
            "DELETE FROM flows WHERE expires_at <= ?",
            _ts(self._clock.now()),
        )

    async def list_records(
        self, flow_type: Optional[str] = None, include_expired: bool = False
    ) -> list[FlowRecord]:
        query = f"SELECT {_COLUMNS} FROM flows WHERE 1 = 1"
        params: list[Any] = []
        if flow_type is not None:
            query += " AND flow_type = ?"
            params.append(flow_type)
        if not include_expired:
            query += " AND expires_at > ?"
            params.append(_ts(self._clock.now()))
        rows = await asyncio.to_thread(
            self._fetchall, query + " ORDER BY created_at", *params
        )
        return [self._to_record(r) for r in rows]
