"""End-to-end tests for the validation HTTP endpoints."""

import asyncio

import jwt
import pytest
from fastapi.testclient import TestClient

from flowstate.api import create_app
from flowstate.clock import ManualClock
from flowstate.config import AuthConfig, FlowStateConfig
from flowstate.errors import StorageFailureError
from flowstate.manager import FlowStateManager
from flowstate.persistence import InMemoryFlowStore
from flowstate.validation import FLOW_TTL_MS, initiate_validation_flow

SECRET = "flowstate-test-secret-0123456789abcdef"


def auth_header(user_id: str) -> dict:
    token = jwt.encode({"id": user_id}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def flow_manager(clock):
    return FlowStateManager(InMemoryFlowStore(clock), clock=clock)


@pytest.fixture
def client(flow_manager):
    config = FlowStateConfig(auth=AuthConfig(secret=SECRET))
    with TestClient(create_app(config, flow_manager)) as test_client:
        yield test_client


def start_flow(flow_manager, user_id="u1"):
    validation_id, _ = asyncio.run(
        initiate_validation_flow(user_id, "srv", "tool", {"a": 1}, flow_manager)
    )
    return validation_id


def test_confirm_then_poll(client, flow_manager):
    validation_id = start_flow(flow_manager)

    pending = client.get(f"/validation/status/{validation_id}", headers=auth_header("u1"))
    assert pending.status_code == 200
    assert pending.json() == {
        "status": "PENDING",
        "completed": False,
        "failed": False,
        "error": None,
    }

    confirmed = client.post(
        f"/validation/confirm/{validation_id}", headers=auth_header("u1")
    )
    assert confirmed.status_code == 200
    assert confirmed.json() == {"success": True}
    assert "state" not in confirmed.text

    status = client.get(f"/validation/status/{validation_id}", headers=auth_header("u1"))
    assert status.status_code == 200
    assert status.json() == {
        "status": "COMPLETED",
        "completed": True,
        "failed": False,
        "error": None,
    }


def test_unknown_flow_is_not_found(client):
    validation_id = "u1:srv:tool:123"
    confirm = client.post(f"/validation/confirm/{validation_id}", headers=auth_header("u1"))
    assert confirm.status_code == 404
    status = client.get(f"/validation/status/{validation_id}", headers=auth_header("u1"))
    assert status.status_code == 404


def test_expired_flow_is_not_found(client, flow_manager, clock):
    validation_id = start_flow(flow_manager)
    clock.advance(milliseconds=FLOW_TTL_MS + 1)

    status = client.get(f"/validation/status/{validation_id}", headers=auth_header("u1"))
    assert status.status_code == 404
    confirm = client.post(f"/validation/confirm/{validation_id}", headers=auth_header("u1"))
    assert confirm.status_code == 404


def test_missing_identity_and_ownership_mismatch_are_distinct(client, flow_manager):
    validation_id = start_flow(flow_manager)

    anonymous = client.post(f"/validation/confirm/{validation_id}")
    assert anonymous.status_code == 401

    bad_token = client.get(
        f"/validation/status/{validation_id}",
        headers={"Authorization": "Bearer garbage"},
    )
    assert bad_token.status_code == 401

    other_user = client.post(
        f"/validation/confirm/{validation_id}", headers=auth_header("u2")
    )
    assert other_user.status_code == 403
    other_poll = client.get(
        f"/validation/status/{validation_id}", headers=auth_header("u2")
    )
    assert other_poll.status_code == 403

    # Rejected requests must not have touched the flow.
    status = client.get(f"/validation/status/{validation_id}", headers=auth_header("u1"))
    assert status.json()["status"] == "PENDING"


def test_second_confirmation_is_internal_error(client, flow_manager):
    validation_id = start_flow(flow_manager)
    headers = auth_header("u1")

    assert client.post(f"/validation/confirm/{validation_id}", headers=headers).status_code == 200
    again = client.post(f"/validation/confirm/{validation_id}", headers=headers)
    assert again.status_code == 500
    assert again.json() == {"detail": "Failed to confirm validation"}

    status = client.get(f"/validation/status/{validation_id}", headers=headers)
    assert status.json()["completed"] is True


def test_storage_failure_reports_failed_flow(client, flow_manager, monkeypatch):
    validation_id = start_flow(flow_manager)
    store = flow_manager.store
    original = store.compare_and_set

    async def flaky_compare_and_set(record, expected_status):
        if record.result is True:
            raise StorageFailureError("connection reset")
        return await original(record, expected_status)

    monkeypatch.setattr(store, "compare_and_set", flaky_compare_and_set)

    confirm = client.post(f"/validation/confirm/{validation_id}", headers=auth_header("u1"))
    assert confirm.status_code == 500
    assert "connection reset" not in confirm.text

    status = client.get(f"/validation/status/{validation_id}", headers=auth_header("u1"))
    assert status.json() == {
        "status": "FAILED",
        "completed": False,
        "failed": True,
        "error": "Storage failure",
    }
    assert "connection reset" not in status.text
