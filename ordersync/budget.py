"""Wall-clock budget for one account's fetch."""
import time
from typing import Callable


class TimeBudget:
    """
    Tracks elapsed time against a fixed budget.

    The clock is injectable so tests can advance time explicitly.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    @property
    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed)

    def expired(self, margin: float = 0.0) -> bool:
        """True once fewer than `margin` seconds of the budget are left."""
        return self.elapsed >= self.seconds - margin

    def __repr__(self) -> str:
        return f"TimeBudget(elapsed={self.elapsed:.1f}s, budget={self.seconds}s)"
