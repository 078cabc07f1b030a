"""Time source abstraction.

Everything time-dependent (circuit cooldowns, staleness, scheduling) reads
the current time through a ``Clock`` so tests can drive it by hand.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Returns the current time as a timezone-aware UTC datetime."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)
