"""In-memory implementation of the flow store."""

from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

from ..clock import Clock, SystemClock
from ..errors import FlowConflictError
from .models import FlowRecord, FlowStatus
from .store import FlowStore


class InMemoryFlowStore(FlowStore):
    """Store flow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._records: Dict[Tuple[str, str], FlowRecord] = {}
        self._lock = threading.Lock()

    def _live(self, key: Tuple[str, str]) -> FlowRecord | None:
        record = self._records.get(key)
        if record is None:
            return None
        if record.is_expired(self._clock.now()):
            del self._records[key]
            return None
        return record

    # ------------------------------------------------------------------
    async def put(self, record: FlowRecord, overwrite: bool = False) -> None:
        with self._lock:
            if not overwrite and self._live(record.key) is not None:
                raise FlowConflictError(
                    "Flow already exists", record.flow_id, record.flow_type
                )
            self._records[record.key] = record.model_copy(deep=True)

    async def get(self, flow_id: str, flow_type: str) -> FlowRecord | None:
        with self._lock:
            record = self._live((flow_type, flow_id))
            return record.model_copy(deep=True) if record else None

    async def delete(self, flow_id: str, flow_type: str) -> None:
        with self._lock:
            self._records.pop((flow_type, flow_id), None)

    async def compare_and_set(
        self, record: FlowRecord, expected_status: FlowStatus
    ) -> bool:
        with self._lock:
            current = self._live(record.key)
            if current is None or current.status is not expected_status:
                return False
            self._records[record.key] = current.model_copy(
                update={
                    "status": record.status,
                    "result": record.result,
                    "error": record.error,
                },
                deep=True,
            )
            return True

    async def purge_expired(self) -> int:
        now = self._clock.now()
        with self._lock:
            expired = [k for k, r in self._records.items() if r.is_expired(now)]
            for key in expired:
                del self._records[key]
        return len(expired)

    async def list_records(
        self, flow_type: Optional[str] = None, include_expired: bool = False
    ) -> list[FlowRecord]:
        now = self._clock.now()
        with self._lock:
            records = list(self._records.values())
        return [
            r.model_copy(deep=True)
            for r in records
            if (flow_type is None or r.flow_type == flow_type)
            and (include_expired or not r.is_expired(now))
        ]
