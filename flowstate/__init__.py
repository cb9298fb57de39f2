"""flowstate: TTL-bound, externally completed flows with at-most-once completion."""

from .clock import ManualClock, SystemClock
from .manager import FlowStateManager, get_flow_manager
from .persistence import FlowRecord, FlowStatus, get_store
from .validation import (
    FLOW_TYPE,
    complete_validation_flow,
    get_flow_state,
    initiate_validation_flow,
)

__version__ = "0.1.0"
__all__ = [
    "FLOW_TYPE",
    "FlowRecord",
    "FlowStateManager",
    "FlowStatus",
    "ManualClock",
    "SystemClock",
    "complete_validation_flow",
    "get_flow_manager",
    "get_flow_state",
    "get_store",
    "initiate_validation_flow",
]
