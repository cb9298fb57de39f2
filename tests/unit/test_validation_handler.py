import base64

import pytest

from flowstate.clock import to_millis
from flowstate.errors import (
    FlowNotFoundError,
    InvalidTransitionError,
    StorageFailureError,
)
from flowstate.persistence import FlowStatus
from flowstate.validation import (
    FLOW_TTL_MS,
    FLOW_TYPE,
    ValidationFlowMetadata,
    complete_validation_flow,
    generate_state,
    generate_validation_id,
    get_flow_state,
    initiate_validation_flow,
)


def _decode_state(state: str) -> bytes:
    return base64.urlsafe_b64decode(state + "=" * (-len(state) % 4))


def test_validation_id_format(clock):
    validation_id = generate_validation_id("u1", "srv", "tool", clock)
    assert validation_id == f"u1:srv:tool:{to_millis(clock.now())}"


def test_state_token_is_32_url_safe_bytes():
    state = generate_state()
    assert "=" not in state
    assert "+" not in state and "/" not in state
    assert len(_decode_state(state)) == 32
    assert generate_state() != state


@pytest.mark.asyncio
async def test_initiate_registers_pending_flow(manager, clock):
    validation_id, metadata = await initiate_validation_flow(
        "u1", "srv", "tool", {"a": 1}, manager
    )

    assert validation_id.startswith("u1:")
    assert metadata.tool_arguments == {"a": 1}
    assert metadata.timestamp == to_millis(clock.now())
    assert len(_decode_state(metadata.state)) == 32

    record = await manager.get_flow_state(validation_id, FLOW_TYPE)
    assert record.status is FlowStatus.PENDING
    assert (record.expires_at - record.created_at).total_seconds() * 1000 == FLOW_TTL_MS
    assert record.metadata["state"] == metadata.state


@pytest.mark.asyncio
async def test_complete_and_read_back(manager):
    validation_id, _ = await initiate_validation_flow(
        "u1", "srv", "tool", {"a": 1}, manager
    )

    assert await complete_validation_flow(validation_id, manager) is True

    metadata = await get_flow_state(validation_id, manager)
    assert isinstance(metadata, ValidationFlowMetadata)
    assert metadata.tool_arguments == {"a": 1}
    record = await manager.get_flow_state(validation_id, FLOW_TYPE)
    assert record.status is FlowStatus.COMPLETED
    assert record.result is True
    assert record.error is None


@pytest.mark.asyncio
async def test_complete_missing_flow_raises_not_found(manager):
    with pytest.raises(FlowNotFoundError):
        await complete_validation_flow("u1:srv:tool:1", manager)
    assert await get_flow_state("u1:srv:tool:1", manager) is None


@pytest.mark.asyncio
async def test_flow_expires_after_ten_minutes(manager, clock):
    validation_id, _ = await initiate_validation_flow("u1", "srv", "tool", {}, manager)
    clock.advance(milliseconds=FLOW_TTL_MS)

    assert await get_flow_state(validation_id, manager) is None
    with pytest.raises(FlowNotFoundError):
        await complete_validation_flow(validation_id, manager)


@pytest.mark.asyncio
async def test_second_confirmation_fails_without_flipping_status(manager):
    validation_id, _ = await initiate_validation_flow("u1", "srv", "tool", {}, manager)
    await complete_validation_flow(validation_id, manager)

    with pytest.raises(InvalidTransitionError):
        await complete_validation_flow(validation_id, manager)

    record = await manager.get_flow_state(validation_id, FLOW_TYPE)
    assert record.status is FlowStatus.COMPLETED


@pytest.mark.asyncio
async def test_storage_failure_marks_flow_failed_and_reraises(manager, store, monkeypatch):
    validation_id, _ = await initiate_validation_flow("u1", "srv", "tool", {}, manager)

    calls = []
    original = store.compare_and_set

    async def flaky_compare_and_set(record, expected_status):
        calls.append(record.status)
        if record.status is FlowStatus.COMPLETED:
            raise StorageFailureError("store unreachable")
        return await original(record, expected_status)

    monkeypatch.setattr(store, "compare_and_set", flaky_compare_and_set)

    with pytest.raises(StorageFailureError):
        await complete_validation_flow(validation_id, manager)

    assert calls == [FlowStatus.COMPLETED, FlowStatus.FAILED]
    record = await manager.get_flow_state(validation_id, FLOW_TYPE)
    assert record.status is FlowStatus.FAILED
    assert record.error.message == "store unreachable"
    assert record.error.kind == "StorageFailureError"
