"""Tool call validation flows.

A validation flow represents a pending human confirmation of a tool
invocation. The module is stateless: it binds the generic flow manager to a
fixed flow type and TTL.
"""

from __future__ import annotations

import base64
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from ..clock import Clock, SystemClock, to_millis
from ..errors import FlowNotFoundError
from ..manager import FlowStateManager

logger = logging.getLogger(__name__)

FLOW_TYPE = "mcp_tool_validation"
FLOW_TTL_MS = 10 * 60 * 1000
FLOW_TTL = timedelta(milliseconds=FLOW_TTL_MS)
STATE_BYTES = 32


class ValidationFlowMetadata(BaseModel):
    """Domain fields stored with a validation flow."""

    user_id: str
    server_name: str
    tool_name: str
    tool_arguments: Dict[str, Any] = Field(default_factory=dict)
    state: str
    timestamp: int


def generate_validation_id(
    user_id: str, server_name: str, tool_name: str, clock: Optional[Clock] = None
) -> str:
    """Build ``"{user_id}:{server_name}:{tool_name}:{unix_millis}"``."""
    now = (clock or SystemClock()).now()
    return f"{user_id}:{server_name}:{tool_name}:{to_millis(now)}"


def generate_state() -> str:
    """Random 32-byte token, URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(secrets.token_bytes(STATE_BYTES)).rstrip(b"=").decode("ascii")


async def initiate_validation_flow(
    user_id: str,
    server_name: str,
    tool_name: str,
    tool_arguments: Dict[str, Any],
    flow_manager: FlowStateManager[bool],
    clock: Optional[Clock] = None,
) -> Tuple[str, ValidationFlowMetadata]:
    """Register a pending validation flow for a tool call.

    Returns:
        The validation id and the metadata stored with the flow.
    """
    logger.debug(f"Initiating validation flow for {server_name}/{tool_name}")
    clock = clock or flow_manager.clock

    validation_id = generate_validation_id(user_id, server_name, tool_name, clock)
    metadata = ValidationFlowMetadata(
        user_id=user_id,
        server_name=server_name,
        tool_name=tool_name,
        tool_arguments=tool_arguments,
        state=generate_state(),
        timestamp=to_millis(clock.now()),
    )
    await flow_manager.create_flow(
        validation_id, FLOW_TYPE, metadata.model_dump(), ttl=FLOW_TTL
    )
    logger.debug(f"Created validation flow {validation_id}")
    return validation_id, metadata


async def complete_validation_flow(
    validation_id: str, flow_manager: FlowStateManager[bool]
) -> bool:
    """Mark the validation flow as confirmed.

    On failure the flow is marked FAILED on a best-effort basis and the
    original error is re-raised.

    Raises:
        FlowNotFoundError: No live flow exists for ``validation_id``.
    """
    try:
        flow_state = await flow_manager.get_flow_state(validation_id, FLOW_TYPE)
        if flow_state is None:
            raise FlowNotFoundError(
                "Validation flow not found", validation_id, FLOW_TYPE
            )
        await flow_manager.complete_flow(validation_id, FLOW_TYPE, True)
        return True
    except Exception as error:
        logger.error(f"Failed to complete validation flow {validation_id}: {error}")
        try:
            await flow_manager.fail_flow(validation_id, FLOW_TYPE, error)
        except Exception as fail_error:
            logger.warning(
                f"Could not mark validation flow {validation_id} as failed: {fail_error}"
            )
        raise


async def get_flow_state(
    validation_id: str, flow_manager: FlowStateManager[bool]
) -> ValidationFlowMetadata | None:
    """Return the metadata of a live validation flow, or ``None``."""
    flow_state = await flow_manager.get_flow_state(validation_id, FLOW_TYPE)
    if flow_state is None:
        return None
    return ValidationFlowMetadata.model_validate(flow_state.metadata)
