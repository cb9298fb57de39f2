"""Injectable time sources."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    """Anything that can tell the current UTC time."""

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to. Used in tests."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        self._now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


def to_millis(value: datetime) -> int:
    """Unix timestamp of ``value`` in milliseconds."""
    return int(value.timestamp() * 1000)


__all__ = ["Clock", "ManualClock", "SystemClock", "to_millis"]
