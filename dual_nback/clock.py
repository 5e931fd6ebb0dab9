from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic clock abstraction.

    Stimulus timestamps are derived from this interface so streaming sessions
    can be driven by a fake clock in tests.
    """

    def now(self) -> float:
        """Return monotonic seconds."""


class RealClock:
    """Production clock backed by time.monotonic()."""

    def now(self) -> float:
        return time.monotonic()


def timestamp_ms(clock: Clock, *, index: int = 0, interval_ms: int = 0) -> int:
    """Scheduled onset of stimulus ``index`` measured from ``clock.now()``."""

    return int(round(clock.now() * 1000.0)) + int(index) * int(interval_ms)
