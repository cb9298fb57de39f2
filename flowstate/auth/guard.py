"""Ownership checks for user-scoped validation flows."""

from __future__ import annotations

import logging
from typing import Optional

from ..errors import ForbiddenError, UnauthenticatedError
from .tokens import AuthenticatedUser

logger = logging.getLogger(__name__)


def authorize_validation_access(
    user: Optional[AuthenticatedUser], validation_id: str
) -> AuthenticatedUser:
    """Ensure ``user`` owns ``validation_id``.

    Validation ids are prefixed with the owning user's id followed by ``:``.

    Raises:
        UnauthenticatedError: No authenticated identity is present.
        ForbiddenError: The validation id belongs to another user.
    """
    if user is None or not user.id:
        raise UnauthenticatedError("User not authenticated")

    if not validation_id.startswith(f"{user.id}:"):
        logger.debug(f"User {user.id} denied access to validation {validation_id}")
        raise ForbiddenError("Access denied")
    return user
