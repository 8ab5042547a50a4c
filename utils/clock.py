"""
Time sources.

Every time-dependent component takes a ``clock`` callable returning
milliseconds so tests can drive it with a fake clock instead of waiting.
"""
from __future__ import annotations

import time
from typing import Callable

Clock = Callable[[], float]


def now_ms() -> float:
    """Wall-clock time in milliseconds."""
    return time.time() * 1000.0


class ManualClock:
    """A clock that only moves when told to. Used by tests and simulations."""

    def __init__(self, start_ms: float = 0.0):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now
