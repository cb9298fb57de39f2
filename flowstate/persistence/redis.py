"""Redis implementation of the flow store."""

from __future__ import annotations

import json
import math
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..clock import Clock, SystemClock, to_millis
from ..errors import FlowConflictError, StorageFailureError
from .models import FlowRecord, FlowStatus
from .store import FlowStore

# Store the record unless a live one (by the caller's clock) holds the key.
_PUT_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current then
    local decoded = cjson.decode(current)
    if tonumber(decoded['expires_ms']) > tonumber(ARGV[2]) then
        return 0
    end
end
redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[3])
return 1
"""

# Swap the stored record iff it is live and its status still matches; the
# key keeps its TTL.
_CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    return 0
end
local decoded = cjson.decode(current)
if tonumber(decoded['expires_ms']) <= tonumber(ARGV[3]) then
    return 0
end
if decoded['status'] ~= ARGV[1] then
    return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'KEEPTTL')
return 1
"""


# Delete the key only if the record it holds has expired.
_PURGE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and tonumber(cjson.decode(current)['expires_ms']) <= tonumber(ARGV[1]) then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

class RedisFlowStore(FlowStore):
    """Redis-based store for flows shared between processes.

    Records are JSON strings under ``flowstate:{type}:{id}`` with a native
    key expiry matching ``expires_at``. Each payload also carries
    ``expires_ms`` so the scripts can check liveness against the store's
    clock.
    """

    prefix = "flowstate"

    def __init__(self, url: str = "redis://localhost:6379/0", clock: Clock | None = None) -> None:
        self.url = url
        self._clock = clock or SystemClock()
        self._redis: Optional[Any] = None
        self._put: Optional[Any] = None
        self._cas: Optional[Any] = None
        self._purge: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.from_url(self.url, decode_responses=True)
        self._put = self._redis.register_script(_PUT_SCRIPT)
        self._cas = self._redis.register_script(_CAS_SCRIPT)
        self._purge = self._redis.register_script(_PURGE_SCRIPT)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._put = None
            self._cas = None
            self._purge = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    def _key(self, flow_id: str, flow_type: str) -> str:
        return f"{self.prefix}:{flow_type}:{flow_id}"

    def _ttl_ms(self, record: FlowRecord) -> int:
        remaining = (record.expires_at - self._clock.now()).total_seconds() * 1000
        return max(1, math.ceil(remaining))

    def _encode(self, record: FlowRecord) -> str:
        payload = record.model_dump(mode="json")
        payload["expires_ms"] = to_millis(record.expires_at)
        return json.dumps(payload)

    def _decode(self, raw: str | None) -> FlowRecord | None:
        if raw is None:
            return None
        record = FlowRecord.model_validate_json(raw)
        if record.is_expired(self._clock.now()):
            return None
        return record

    # ------------------------------------------------------------------
    async def put(self, record: FlowRecord, overwrite: bool = False) -> None:
        client = await self._client()
        key = self._key(record.flow_id, record.flow_type)
        try:
            if overwrite:
                await client.set(key, self._encode(record), px=self._ttl_ms(record))
                return
            stored = await self._put(
                keys=[key],
                args=[
                    self._encode(record),
                    to_millis(self._clock.now()),
                    self._ttl_ms(record),
                ],
            )
        except RedisError as exc:
            raise StorageFailureError(f"Redis put failed: {exc}") from exc
        if not stored:
            raise FlowConflictError(
                "Flow already exists", record.flow_id, record.flow_type
            )

    async def get(self, flow_id: str, flow_type: str) -> FlowRecord | None:
        client = await self._client()
        try:
            raw = await client.get(self._key(flow_id, flow_type))
        except RedisError as exc:
            raise StorageFailureError(f"Redis get failed: {exc}") from exc
        return self._decode(raw)

    async def delete(self, flow_id: str, flow_type: str) -> None:
        client = await self._client()
        try:
            await client.delete(self._key(flow_id, flow_type))
        except RedisError as exc:
            raise StorageFailureError(f"Redis delete failed: {exc}") from exc

    async def compare_and_set(
        self, record: FlowRecord, expected_status: FlowStatus
    ) -> bool:
        await self._client()
        try:
            swapped = await self._cas(
                keys=[self._key(record.flow_id, record.flow_type)],
                args=[
                    expected_status.value,
                    self._encode(record),
                    to_millis(self._clock.now()),
                ],
            )
        except RedisError as exc:
            raise StorageFailureError(f"Redis compare-and-set failed: {exc}") from exc
        return bool(swapped)

    async def purge_expired(self) -> int:
        client = await self._client()
        removed = 0
        try:
            now_ms = to_millis(self._clock.now())
            async for key in client.scan_iter(match=f"{self.prefix}:*"):
                removed += await self._purge(keys=[key], args=[now_ms])
        except RedisError as exc:
            raise StorageFailureError(f"Redis sweep failed: {exc}") from exc
        return removed

    async def list_records(
        self, flow_type: Optional[str] = None, include_expired: bool = False
    ) -> list[FlowRecord]:
        client = await self._client()
        pattern = f"{self.prefix}:{flow_type}:*" if flow_type else f"{self.prefix}:*"
        records: list[FlowRecord] = []
        try:
            async for key in client.scan_iter(match=pattern):
                raw = await client.get(key)
                if raw is None:
                    continue
                record = FlowRecord.model_validate_json(raw)
                if include_expired or not record.is_expired(self._clock.now()):
                    records.append(record)
        except RedisError as exc:
            raise StorageFailureError(f"Redis scan failed: {exc}") from exc
        return sorted(records, key=lambda r: r.created_at)
