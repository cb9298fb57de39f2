"""Persistence layer for flow state."""

from __future__ import annotations

import os
from typing import Optional

from ..clock import Clock
from ..config import FlowStateConfig, load_config
from .inmemory import InMemoryFlowStore
from .models import FlowFailure, FlowRecord, FlowStatus
from .sqlite import SQLiteFlowStore
from .store import FlowStore

_store_instance: FlowStore | None = None


def get_store(
    database_url: Optional[str] = None,
    config: Optional[FlowStateConfig] = None,
    clock: Optional[Clock] = None,
) -> FlowStore:
    """Factory function to obtain a flow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWSTATE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if (
        _store_instance is not None
        and database_url is None
        and config is None
        and clock is None
    ):
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWSTATE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _store_instance = InMemoryFlowStore(clock)
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteFlowStore(path, clock)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresFlowStore

        _store_instance = PostgresFlowStore(database_url, clock)
    elif database_url.startswith("redis://") or database_url.startswith("rediss://"):
        from .redis import RedisFlowStore

        _store_instance = RedisFlowStore(database_url, clock)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


def reset_store() -> None:
    """Forget the cached store instance."""
    global _store_instance
    _store_instance = None


__all__ = [
    "FlowFailure",
    "FlowRecord",
    "FlowStatus",
    "FlowStore",
    "InMemoryFlowStore",
    "SQLiteFlowStore",
    "get_store",
    "reset_store",
]
