"""Exception hierarchy for flow state handling."""

from __future__ import annotations

from typing import Optional


class FlowStateError(Exception):
    """Base class for all flowstate errors."""


class FlowError(FlowStateError):
    """Error tied to a specific flow key."""

    def __init__(
        self,
        message: str,
        flow_id: Optional[str] = None,
        flow_type: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.flow_id = flow_id
        self.flow_type = flow_type


class FlowNotFoundError(FlowError):
    """No live record exists for the key (absent or expired)."""


class FlowConflictError(FlowError):
    """A live record already occupies the key."""


class FlowAlreadyExistsError(FlowConflictError):
    """Attempt to create a flow whose key is already live."""


class InvalidTransitionError(FlowError):
    """Attempt to complete or fail a flow that is already terminal."""


class FlowTimeoutError(FlowError):
    """Waiting for a flow to become terminal timed out."""


class FlowFailedError(FlowError):
    """An awaited flow ended in the FAILED state."""


class StorageFailureError(FlowStateError):
    """The backing store could not be reached or rejected the operation."""


class AuthError(FlowStateError):
    """Base class for authentication and authorization errors."""


class UnauthenticatedError(AuthError):
    """No valid authenticated identity is present."""


class ForbiddenError(AuthError):
    """The authenticated identity does not own the requested resource."""


__all__ = [
    "AuthError",
    "FlowAlreadyExistsError",
    "FlowConflictError",
    "FlowError",
    "FlowFailedError",
    "FlowNotFoundError",
    "FlowStateError",
    "FlowTimeoutError",
    "ForbiddenError",
    "InvalidTransitionError",
    "StorageFailureError",
    "UnauthenticatedError",
]
