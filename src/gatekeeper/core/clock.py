"""
Time sources.

Stores and the rate limiter read time through a Clock so tests can move it.
"""

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Anything with a now() returning seconds as a float."""

    def now(self) -> float:
        ...


class SystemClock:
    """Wall clock. Used by stores whose state outlives the process."""

    def now(self) -> float:
        return time.time()


class MonotonicClock:
    """Monotonic clock for in-process state."""

    def now(self) -> float:
        return time.monotonic()
