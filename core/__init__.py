"""
Core Module Package.

This package contains the infrastructure components
that every workflow module depends on.

Components:
- clock: Unified time abstraction and date-boundary helpers
- exceptions: Typed workflow failures
"""

from .clock import (
    ClockProtocol,
    SystemClock,
    MockClock,
    ClockFactory,
    get_clock,
    as_utc,
    utc_midnight,
    calendar_date_of,
)
from .exceptions import (
    WorkflowException,
    ConfigurationError,
    InvalidConfigError,
    InvalidTransition,
    Unauthorized,
    Forbidden,
    BenchmarkUnavailable,
    NotFound,
    InvalidPair,
    Conflict,
)
