from .guard import authorize_validation_access
from .tokens import AuthenticatedUser, TokenVerifier

__all__ = ["AuthenticatedUser", "TokenVerifier", "authorize_validation_access"]
