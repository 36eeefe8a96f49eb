"""
Injectable time source.

Services take a ``Clock`` instead of reading the wall clock directly so tests
can pin dates across month boundaries and retention windows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@dataclass
class FixedClock:
    """Clock that only moves when told to."""

    current: datetime = field(
        default_factory=lambda: datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
    )

    def __post_init__(self):
        self.current = as_utc(self.current)

    def now(self) -> datetime:
        return self.current

    def set(self, value: datetime) -> None:
        self.current = as_utc(value)

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime) -> str:
    """Fixed-width ISO-8601 rendering so stored timestamps sort lexically."""
    return as_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(value))
