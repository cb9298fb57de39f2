"""Concurrency-safe flow state manager."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)

from .clock import Clock, SystemClock
from .config import FlowStateConfig, load_config
from .errors import (
    FlowAlreadyExistsError,
    FlowConflictError,
    FlowFailedError,
    FlowNotFoundError,
    FlowTimeoutError,
    InvalidTransitionError,
    StorageFailureError,
)
from .persistence import FlowStore, get_store
from .persistence.models import FlowFailure, FlowRecord, FlowStatus

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

DEFAULT_TTL = timedelta(minutes=3)

Key = Tuple[str, str]


class FlowStateManager(Generic[ResultT]):
    """Tracks externally completed operations stored in a :class:`FlowStore`.

    The manager is the only component that changes a record's status. Each
    transition takes a per-key lock for callers sharing this manager and is
    committed with the store's compare-and-set, so concurrent completions
    from other processes are also resolved in favour of exactly one writer.
    Readers are never blocked by transitions.
    """

    def __init__(
        self,
        store: FlowStore,
        clock: Clock | None = None,
        default_ttl: timedelta = DEFAULT_TTL,
        poll_interval: float = 1.0,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._default_ttl = default_ttl
        self._poll_interval = poll_interval
        self._locks: Dict[Key, asyncio.Lock] = {}
        self._lock_users: Dict[Key, int] = {}
        self._waiters: Dict[Key, asyncio.Event] = {}
        self._waiter_counts: Dict[Key, int] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def store(self) -> FlowStore:
        return self._store

    @property
    def clock(self) -> Clock:
        return self._clock

    # ------------------------------------------------------------------
    # Per-key coordination
    @asynccontextmanager
    async def _key_lock(self, key: Key) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def _register_waiter(self, key: Key) -> asyncio.Event:
        event = self._waiters.get(key)
        if event is None:
            event = self._waiters[key] = asyncio.Event()
        self._waiter_counts[key] = self._waiter_counts.get(key, 0) + 1
        return event

    def _release_waiter(self, key: Key) -> None:
        count = self._waiter_counts.get(key, 0) - 1
        if count > 0:
            self._waiter_counts[key] = count
            return
        self._waiter_counts.pop(key, None)
        self._waiters.pop(key, None)

    def _notify(self, key: Key) -> None:
        event = self._waiters.pop(key, None)
        if event is not None:
            event.set()

    # ------------------------------------------------------------------
    # Public API
    async def create_flow(
        self,
        flow_id: str,
        flow_type: str,
        metadata: Optional[Mapping[str, Any]] = None,
        ttl: Optional[timedelta] = None,
    ) -> FlowRecord:
        """Register a new PENDING flow.

        Raises:
            FlowAlreadyExistsError: A live flow with the same key exists.
        """
        now = self._clock.now()
        record = FlowRecord(
            flow_id=flow_id,
            flow_type=flow_type,
            status=FlowStatus.PENDING,
            metadata=dict(metadata or {}),
            created_at=now,
            expires_at=now + (ttl if ttl is not None else self._default_ttl),
        )
        try:
            await self._store.put(record)
        except FlowConflictError as exc:
            raise FlowAlreadyExistsError(
                f"Flow {flow_type}/{flow_id} already exists", flow_id, flow_type
            ) from exc
        logger.debug(
            f"Created flow {flow_type}/{flow_id} expiring at {record.expires_at.isoformat()}"
        )
        return record

    async def get_flow_state(self, flow_id: str, flow_type: str) -> FlowRecord | None:
        """Return the live record for the key, or ``None`` if absent or expired."""
        return await self._store.get(flow_id, flow_type)

    async def complete_flow(
        self, flow_id: str, flow_type: str, result: ResultT
    ) -> FlowRecord:
        """Transition PENDING -> COMPLETED storing ``result``."""
        return await self._transition(
            flow_id, flow_type, FlowStatus.COMPLETED, result=result
        )

    async def fail_flow(
        self,
        flow_id: str,
        flow_type: str,
        error: BaseException | str | FlowFailure,
    ) -> FlowRecord:
        """Transition PENDING -> FAILED storing ``error``."""
        return await self._transition(
            flow_id, flow_type, FlowStatus.FAILED, error=FlowFailure.from_error(error)
        )

    async def _transition(
        self,
        flow_id: str,
        flow_type: str,
        status: FlowStatus,
        result: Any = None,
        error: Optional[FlowFailure] = None,
    ) -> FlowRecord:
        key = (flow_type, flow_id)
        async with self._key_lock(key):
            current = await self._store.get(flow_id, flow_type)
            if current is None:
                raise FlowNotFoundError(
                    f"Flow {flow_type}/{flow_id} not found", flow_id, flow_type
                )
            if current.is_terminal:
                raise InvalidTransitionError(
                    f"Flow {flow_type}/{flow_id} is already {current.status.value}",
                    flow_id,
                    flow_type,
                )
            updated = current.model_copy(
                update={"status": status, "result": result, "error": error}
            )
            if not await self._store.compare_and_set(updated, FlowStatus.PENDING):
                # Lost a race with another process, or the flow just expired.
                latest = await self._store.get(flow_id, flow_type)
                if latest is None:
                    raise FlowNotFoundError(
                        f"Flow {flow_type}/{flow_id} not found", flow_id, flow_type
                    )
                raise InvalidTransitionError(
                    f"Flow {flow_type}/{flow_id} is already {latest.status.value}",
                    flow_id,
                    flow_type,
                )
        if status is FlowStatus.COMPLETED:
            logger.info(f"Completed flow {flow_type}/{flow_id}")
        else:
            logger.info(f"Failed flow {flow_type}/{flow_id}: {error.message if error else ''}")
        self._notify(key)
        return updated

    async def delete_flow(self, flow_id: str, flow_type: str) -> None:
        """Remove the flow regardless of status."""
        await self._store.delete(flow_id, flow_type)
        logger.debug(f"Deleted flow {flow_type}/{flow_id}")

    async def await_completion(
        self, flow_id: str, flow_type: str, timeout: Optional[float] = None
    ) -> FlowRecord:
        """Wait until the flow becomes terminal and return its record.

        Local completions wake waiters immediately; completions made by
        other processes are picked up on the next store re-check, every
        ``poll_interval`` seconds.

        Raises:
            FlowNotFoundError: The flow is absent or expired while waiting.
            FlowTimeoutError: ``timeout`` seconds elapsed first.
        """
        key = (flow_type, flow_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            event = self._register_waiter(key)
            try:
                record = await self._store.get(flow_id, flow_type)
                if record is None:
                    raise FlowNotFoundError(
                        f"Flow {flow_type}/{flow_id} not found", flow_id, flow_type
                    )
                if record.is_terminal:
                    return record
                wait_for = self._poll_interval
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise FlowTimeoutError(
                            f"Timed out waiting for flow {flow_type}/{flow_id}",
                            flow_id,
                            flow_type,
                        )
                    wait_for = min(wait_for, remaining)
                try:
                    await asyncio.wait_for(event.wait(), wait_for)
                except asyncio.TimeoutError:
                    pass
            finally:
                self._release_waiter(key)

    async def run_flow(
        self,
        flow_id: str,
        flow_type: str,
        handler: Callable[[], Awaitable[ResultT]],
        metadata: Optional[Mapping[str, Any]] = None,
        ttl: Optional[timedelta] = None,
        timeout: Optional[float] = None,
    ) -> ResultT:
        """Run ``handler`` once per live key and share its outcome.

        The first caller creates the flow and runs ``handler``; callers that
        arrive while the flow is live wait for that outcome instead.
        """
        try:
            await self.create_flow(flow_id, flow_type, metadata, ttl)
        except FlowAlreadyExistsError:
            logger.debug(f"Flow {flow_type}/{flow_id} already running, awaiting it")
            record = await self.await_completion(flow_id, flow_type, timeout)
            if record.status is FlowStatus.FAILED:
                message = record.error.message if record.error else "Flow failed"
                raise FlowFailedError(message, flow_id, flow_type)
            return record.result

        try:
            result = await handler()
        except Exception as exc:
            try:
                await self.fail_flow(flow_id, flow_type, exc)
            except Exception as fail_exc:
                logger.warning(
                    f"Could not mark flow {flow_type}/{flow_id} as failed: {fail_exc}"
                )
            raise
        await self.complete_flow(flow_id, flow_type, result)
        return result

    # ------------------------------------------------------------------
    # Expiry housekeeping
    def start_sweeper(self, interval: float) -> asyncio.Task:
        """Start a background task purging expired records every ``interval`` seconds."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval))
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def sweep(self) -> int:
        removed = await self._store.purge_expired()
        if removed:
            logger.debug(f"Purged {removed} expired flows")
        return removed

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except StorageFailureError as exc:
                logger.warning(f"Expired flow sweep failed: {exc}")


_manager_instance: FlowStateManager | None = None


def get_flow_manager(
    config: Optional[FlowStateConfig] = None, clock: Optional[Clock] = None
) -> FlowStateManager:
    """Return the process-wide manager built from configuration."""

    global _manager_instance
    if _manager_instance is not None and config is None and clock is None:
        return _manager_instance

    config = config or load_config()
    store = get_store(config=config, clock=clock)
    _manager_instance = FlowStateManager(
        store, clock=clock, poll_interval=config.flows.poll_interval
    )
    return _manager_instance


def reset_flow_manager() -> None:
    """Forget the cached manager instance."""
    global _manager_instance
    _manager_instance = None
