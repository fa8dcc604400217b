"""
Core Module - System Clock.

============================================================
RESPONSIBILITY
============================================================
Provides a unified, testable clock abstraction for the workflow.

- All timestamps written by the workflow come from this clock
- Enables deterministic tests of date-boundary rules
- Separates the UTC instant from the caller's local calendar date

============================================================
DESIGN PRINCIPLES
============================================================
- Instants are always UTC
- Calendar dates are derived explicitly, in a named zone
- Mockable for testing
- Thread-safe

============================================================
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional
import threading


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for system clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    def local_today(self, zone: Optional[tzinfo] = None) -> date:
        """
        Get the current calendar date in a local zone.

        Args:
            zone: Target zone; host local zone when None
        """
        current = self.now()
        if zone is None:
            return current.astimezone().date()
        return current.astimezone(zone).date()


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """Production clock using actual system time."""

    def now(self) -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Allows time manipulation for deterministic tests.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        self._time = as_utc(initial_time) if initial_time else datetime.now(timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Get current (mocked) datetime."""
        with self._lock:
            return self._time

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        with self._lock:
            self._time = as_utc(new_time)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)


# ============================================================
# DATE HELPERS
# ============================================================

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to an aware UTC instant.

    Naive values are taken to be UTC already (SQLite drops tzinfo).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_midnight(day: date) -> datetime:
    """Storage instant for a date-only field: UTC midnight of that date."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def calendar_date_of(stored: datetime) -> date:
    """Calendar date of a stored UTC instant, ignoring time of day."""
    return as_utc(stored).date()


# ============================================================
# CLOCK FACTORY
# ============================================================

class ClockFactory:
    """Factory for the process-wide clock instance."""

    _instance: Optional[ClockProtocol] = None
    _lock = threading.Lock()

    @classmethod
    def get_clock(cls) -> ClockProtocol:
        """Get the global clock instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = SystemClock()
            return cls._instance


def get_clock() -> ClockProtocol:
    """Shortcut for ClockFactory.get_clock()."""
    return ClockFactory.get_clock()
