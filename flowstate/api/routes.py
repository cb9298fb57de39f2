"""HTTP routes for confirming and polling tool call validation flows."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from ..auth import AuthenticatedUser, TokenVerifier, authorize_validation_access
from ..errors import (
    FlowNotFoundError,
    ForbiddenError,
    StorageFailureError,
    UnauthenticatedError,
)
from ..manager import FlowStateManager
from ..persistence.models import FlowFailure, FlowStatus
from ..validation import FLOW_TYPE, complete_validation_flow, get_flow_state

logger = logging.getLogger(__name__)


class ConfirmResponse(BaseModel):
    success: bool = True


class ValidationStatusResponse(BaseModel):
    status: FlowStatus
    completed: bool
    failed: bool
    error: Optional[str] = None


def _client_error(error: Optional[FlowFailure]) -> Optional[str]:
    if error is None:
        return None
    # Backend error text stays in the logs.
    if error.kind == StorageFailureError.__name__:
        return "Storage failure"
    return error.message


def bearer_user_dependency(
    verifier: TokenVerifier,
) -> Callable[..., Optional[AuthenticatedUser]]:
    """Build a dependency resolving the bearer token to a user, or ``None``."""

    bearer = HTTPBearer(auto_error=False)

    def current_user(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    ) -> Optional[AuthenticatedUser]:
        if credentials is None:
            return None
        try:
            return verifier.authenticate(credentials.credentials)
        except UnauthenticatedError:
            return None

    return current_user


def create_validation_router(
    get_flow_manager: Callable[[], FlowStateManager[bool]],
    get_current_user: Callable[..., Optional[AuthenticatedUser]],
) -> APIRouter:
    """Create the validation router.

    Args:
        get_flow_manager: Dependency returning the flow manager.
        get_current_user: Dependency returning the authenticated user or
            ``None`` when the request carries no valid identity.
    """
    router = APIRouter()

    def validation_user_guard(
        validation_id: str,
        user: Optional[AuthenticatedUser] = Depends(get_current_user),
    ) -> AuthenticatedUser:
        # Only user-owned validation flows are reachable.
        try:
            return authorize_validation_access(user, validation_id)
        except UnauthenticatedError:
            raise HTTPException(status_code=401, detail="User not authenticated")
        except ForbiddenError:
            raise HTTPException(status_code=403, detail="Access denied")

    @router.post("/validation/confirm/{validation_id}", response_model=ConfirmResponse)
    async def confirm_validation(
        validation_id: str,
        user: AuthenticatedUser = Depends(validation_user_guard),
        flow_manager: FlowStateManager[bool] = Depends(get_flow_manager),
    ) -> ConfirmResponse:
        """Called when the user confirms a tool call."""
        try:
            flow_state = await get_flow_state(validation_id, flow_manager)
            if flow_state is None:
                raise HTTPException(status_code=404, detail="Validation flow not found")
            await complete_validation_flow(validation_id, flow_manager)
        except HTTPException:
            raise
        except FlowNotFoundError:
            raise HTTPException(status_code=404, detail="Validation flow not found")
        except Exception as e:
            logger.error(f"Failed to confirm validation {validation_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to confirm validation")

        logger.info(f"Tool call validation confirmed for {validation_id} by {user.id}")
        return ConfirmResponse(success=True)

    @router.get(
        "/validation/status/{validation_id}", response_model=ValidationStatusResponse
    )
    async def validation_status(
        validation_id: str,
        user: AuthenticatedUser = Depends(validation_user_guard),
        flow_manager: FlowStateManager[bool] = Depends(get_flow_manager),
    ) -> ValidationStatusResponse:
        """Poll the status of a validation flow."""
        try:
            flow_state = await flow_manager.get_flow_state(validation_id, FLOW_TYPE)
        except Exception as e:
            logger.error(f"Failed to get validation status for {validation_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to get validation status")

        if flow_state is None:
            raise HTTPException(status_code=404, detail="Validation flow not found")

        return ValidationStatusResponse(
            status=flow_state.status,
            completed=flow_state.status is FlowStatus.COMPLETED,
            failed=flow_state.status is FlowStatus.FAILED,
            error=_client_error(flow_state.error),
        )

    return router
