"""Store abstraction for flow state persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from .models import FlowRecord, FlowStatus


class FlowStore(Protocol):
    """Protocol for flow state persistence backends.

    Implementations never return a record whose ``expires_at`` has passed,
    even when physical removal is deferred.
    """

    async def put(self, record: FlowRecord, overwrite: bool = False) -> None:
        """Insert ``record``; raise ``FlowConflictError`` if its key is live."""

    async def get(self, flow_id: str, flow_type: str) -> FlowRecord | None:
        """Return the live record for the key, or ``None``."""

    async def delete(self, flow_id: str, flow_type: str) -> None:
        """Remove the record for the key if present."""

    async def compare_and_set(
        self, record: FlowRecord, expected_status: FlowStatus
    ) -> bool:
        """Atomically store ``record``'s outcome if the live status matches."""

    async def purge_expired(self) -> int:
        """Physically remove expired records and return how many went."""

    async def list_records(
        self, flow_type: Optional[str] = None, include_expired: bool = False
    ) -> list[FlowRecord]:
        """Return stored records, optionally filtered by type."""
