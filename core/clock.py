"""
core/clock.py -- Injectable time source.

Every expiry comparison in authcore goes through a Clock so token, rotation
and cache tests can move time without sleeping. A Clock is any zero-argument
callable returning a timezone-aware UTC datetime; utc_now is the production one.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(moment: datetime) -> float:
    """Convert an aware datetime to epoch seconds (the storage representation)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)
