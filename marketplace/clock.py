"""
clock.py - Logical Clock

The marketplace never reads wall-clock time. Every timestamp (listing creation,
purchase time, delivery deadline, refund eligibility) comes from a Clock that the
environment owns and advances. Time can only move forward.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional


class LogicalClock:
    """
    Monotonically non-decreasing logical time source.

    Example:
        clock = LogicalClock(datetime(2025, 1, 1))
        clock.advance(timedelta(hours=72))
        clock.current_time  # datetime(2025, 1, 4)
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Args:
            initial_time: Starting time (default: 1970-01-01)
        """
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)

    @property
    def current_time(self) -> datetime:
        """Current logical time."""
        return self._current_time

    def advance_to(self, new_time: datetime) -> None:
        """
        Move the clock to new_time.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    def advance(self, delta: timedelta) -> datetime:
        """Move the clock forward by delta and return the new time."""
        if delta < timedelta(0):
            raise ValueError(f"Cannot advance by a negative delta: {delta}")
        self._current_time = self._current_time + delta
        return self._current_time

    def __repr__(self) -> str:
        return f"LogicalClock({self._current_time.isoformat()})"
