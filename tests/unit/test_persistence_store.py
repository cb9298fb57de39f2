from datetime import timedelta

import pytest

from flowstate.errors import FlowConflictError
from flowstate.persistence import (
    FlowFailure,
    FlowRecord,
    FlowStatus,
    InMemoryFlowStore,
    SQLiteFlowStore,
)


def make_record(clock, flow_id="f1", flow_type="t", ttl=60, **kwargs):
    now = clock.now()
    return FlowRecord(
        flow_id=flow_id,
        flow_type=flow_type,
        metadata=kwargs.pop("metadata", {"owner": "u1"}),
        created_at=now,
        expires_at=now + timedelta(seconds=ttl),
        **kwargs,
    )


@pytest.fixture(params=["inmemory", "sqlite"])
def flow_store(request, clock, tmp_path):
    if request.param == "inmemory":
        return InMemoryFlowStore(clock)
    return SQLiteFlowStore(tmp_path / "flows.db", clock)


@pytest.mark.asyncio
async def test_put_and_get(flow_store, clock):
    await flow_store.put(make_record(clock, metadata={"owner": "u1", "args": {"a": 1}}))

    record = await flow_store.get("f1", "t")
    assert record is not None
    assert record.status is FlowStatus.PENDING
    assert record.metadata == {"owner": "u1", "args": {"a": 1}}
    assert record.expires_at == clock.now() + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_type_partitions_key_space(flow_store, clock):
    await flow_store.put(make_record(clock, flow_type="a"))
    await flow_store.put(make_record(clock, flow_type="b"))

    assert (await flow_store.get("f1", "a")).flow_type == "a"
    assert (await flow_store.get("f1", "b")).flow_type == "b"
    assert await flow_store.get("f1", "c") is None


@pytest.mark.asyncio
async def test_put_conflicts_with_live_record(flow_store, clock):
    await flow_store.put(make_record(clock))
    with pytest.raises(FlowConflictError):
        await flow_store.put(make_record(clock, metadata={"owner": "u2"}))

    await flow_store.put(make_record(clock, metadata={"owner": "u2"}), overwrite=True)
    assert (await flow_store.get("f1", "t")).metadata == {"owner": "u2"}


@pytest.mark.asyncio
async def test_expired_record_is_absent_and_replaceable(flow_store, clock):
    await flow_store.put(make_record(clock, ttl=10))
    clock.advance(seconds=10)

    assert await flow_store.get("f1", "t") is None
    await flow_store.put(make_record(clock, metadata={"owner": "u3"}))
    assert (await flow_store.get("f1", "t")).metadata == {"owner": "u3"}


@pytest.mark.asyncio
async def test_delete_is_idempotent(flow_store, clock):
    await flow_store.put(make_record(clock))
    await flow_store.delete("f1", "t")
    await flow_store.delete("f1", "t")
    assert await flow_store.get("f1", "t") is None


@pytest.mark.asyncio
async def test_compare_and_set_only_from_expected_status(flow_store, clock):
    record = make_record(clock)
    await flow_store.put(record)

    completed = record.model_copy(update={"status": FlowStatus.COMPLETED, "result": True})
    assert await flow_store.compare_and_set(completed, FlowStatus.PENDING)

    failed = record.model_copy(
        update={"status": FlowStatus.FAILED, "error": FlowFailure(message="boom")}
    )
    assert not await flow_store.compare_and_set(failed, FlowStatus.PENDING)

    stored = await flow_store.get("f1", "t")
    assert stored.status is FlowStatus.COMPLETED
    assert stored.result is True
    assert stored.error is None
    assert stored.metadata == {"owner": "u1"}


@pytest.mark.asyncio
async def test_compare_and_set_ignores_expired_records(flow_store, clock):
    record = make_record(clock, ttl=5)
    await flow_store.put(record)
    clock.advance(seconds=6)

    completed = record.model_copy(update={"status": FlowStatus.COMPLETED, "result": True})
    assert not await flow_store.compare_and_set(completed, FlowStatus.PENDING)


@pytest.mark.asyncio
async def test_purge_and_list(flow_store, clock):
    await flow_store.put(make_record(clock, flow_id="short", ttl=5))
    await flow_store.put(make_record(clock, flow_id="long", ttl=500))
    await flow_store.put(make_record(clock, flow_id="other", flow_type="x", ttl=500))
    clock.advance(seconds=10)

    live = await flow_store.list_records(flow_type="t")
    assert [r.flow_id for r in live] == ["long"]
    everything = await flow_store.list_records(include_expired=True)
    assert {r.flow_id for r in everything} == {"short", "long", "other"}

    assert await flow_store.purge_expired() == 1
    remaining = await flow_store.list_records(include_expired=True)
    assert {r.flow_id for r in remaining} == {"long", "other"}


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_instances(tmp_path, clock):
    path = tmp_path / "flows.db"
    first = SQLiteFlowStore(path, clock)
    record = make_record(clock)
    await first.put(record)
    await first.compare_and_set(
        record.model_copy(update={"status": FlowStatus.FAILED, "error": FlowFailure(message="no", kind="ValueError")}),
        FlowStatus.PENDING,
    )

    reopened = SQLiteFlowStore(path, clock)
    stored = await reopened.get("f1", "t")
    assert stored.status is FlowStatus.FAILED
    assert stored.error == FlowFailure(message="no", kind="ValueError")
