"""Minimal stopwatch used to rate-limit repeated alerts."""

import time
from typing import Callable


class ElapsedTimer:
    """Measures time elapsed since the last start or reset."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started_at: float | None = None

    def start(self):
        self._started_at = self._clock()

    def reset(self):
        """Restart measuring from now."""
        self.start()

    @property
    def running(self) -> bool:
        return self._started_at is not None

    @property
    def elapsed(self) -> float:
        """Seconds since start/reset, 0 if never started."""
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at
