"""HTTP interface for validation flows."""

from .app import create_app
from .routes import bearer_user_dependency, create_validation_router

__all__ = ["bearer_user_dependency", "create_app", "create_validation_router"]
