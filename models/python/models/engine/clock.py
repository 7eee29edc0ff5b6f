"""Time sources for the auction engine.

Everything time-dependent in the engine reads ``clock.now()`` so tests can
pin and advance time deterministically.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, instant: Optional[datetime] = None):
        self._instant = ensure_utc(instant or datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = ensure_utc(instant)

    def advance(self, **kwargs) -> datetime:
        """Move forward by ``timedelta(**kwargs)`` and return the new instant."""
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant


def ensure_utc(value: datetime) -> datetime:
    # Couchbase hands back ISO strings without offset for some writers
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
