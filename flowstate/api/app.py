"""FastAPI application wiring."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from ..auth import TokenVerifier
from ..config import FlowStateConfig, load_config
from ..manager import FlowStateManager, get_flow_manager
from .routes import bearer_user_dependency, create_validation_router


def create_app(
    config: Optional[FlowStateConfig] = None,
    flow_manager: Optional[FlowStateManager] = None,
) -> FastAPI:
    """Build the HTTP application serving validation routes."""

    config = config or load_config()
    manager = flow_manager or get_flow_manager(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if config.flows.sweep_interval:
            manager.start_sweeper(config.flows.sweep_interval)
        try:
            yield
        finally:
            await manager.stop_sweeper()

    app = FastAPI(title="flowstate", lifespan=lifespan)

    def _flow_manager() -> FlowStateManager:
        return manager

    app.include_router(
        create_validation_router(
            _flow_manager, bearer_user_dependency(TokenVerifier(config.auth))
        )
    )
    app.state.flow_manager = manager
    return app
