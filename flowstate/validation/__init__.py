"""Tool call validation flows."""

from .handler import (
    FLOW_TTL,
    FLOW_TTL_MS,
    FLOW_TYPE,
    ValidationFlowMetadata,
    complete_validation_flow,
    generate_state,
    generate_validation_id,
    get_flow_state,
    initiate_validation_flow,
)

__all__ = [
    "FLOW_TTL",
    "FLOW_TTL_MS",
    "FLOW_TYPE",
    "ValidationFlowMetadata",
    "complete_validation_flow",
    "generate_state",
    "generate_validation_id",
    "get_flow_state",
    "initiate_validation_flow",
]
