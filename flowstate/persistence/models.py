"""Data models for persisted flow state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


class FlowStatus(str, Enum):
    """Lifecycle states of a flow."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({FlowStatus.COMPLETED, FlowStatus.FAILED})


class FlowFailure(BaseModel):
    """Error carried by a FAILED flow."""

    message: str
    kind: str = "Error"

    @classmethod
    def from_error(cls, error: BaseException | str | "FlowFailure") -> "FlowFailure":
        if isinstance(error, FlowFailure):
            return error
        if isinstance(error, BaseException):
            return cls(message=str(error) or type(error).__name__, kind=type(error).__name__)
        return cls(message=str(error))


class FlowRecord(BaseModel):
    """Persisted flow record keyed by ``(flow_id, flow_type)``."""

    flow_id: str
    flow_type: str
    status: FlowStatus = FlowStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: Optional[FlowFailure] = None
    created_at: datetime
    expires_at: datetime

    @model_validator(mode="after")
    def _check_outcome(self) -> "FlowRecord":
        if self.error is not None and self.status is not FlowStatus.FAILED:
            raise ValueError("error is only allowed on FAILED flows")
        if self.result is not None and self.status is not FlowStatus.COMPLETED:
            raise ValueError("result is only allowed on COMPLETED flows")
        return self

    @property
    def key(self) -> Tuple[str, str]:
        return self.flow_type, self.flow_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def effective_status(self, now: datetime) -> FlowStatus:
        """Status as seen by readers; expired records report EXPIRED."""
        return FlowStatus.EXPIRED if self.is_expired(now) else self.status
