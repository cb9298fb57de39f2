import pytest

from flowstate.clock import ManualClock
from flowstate.manager import FlowStateManager, reset_flow_manager
from flowstate.persistence import InMemoryFlowStore, reset_store


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep tests away from ambient configuration and cached singletons."""
    monkeypatch.setenv("FLOWSTATE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("FLOWSTATE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    reset_store()
    reset_flow_manager()
    yield
    reset_store()
    reset_flow_manager()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return InMemoryFlowStore(clock)


@pytest.fixture
def manager(store, clock):
    return FlowStateManager(store, clock=clock, poll_interval=0.05)
