from __future__ import annotations

import math
import time
from typing import Callable, Optional

PROGRESS_CEILING = 95


def estimate_progress(elapsed_seconds: float, time_constant: float = 8.0) -> int:
    """Time-driven progress estimate in ``[0, 95)``, non-decreasing in elapsed time.

    Provider latency is unknown, so the curve approaches the ceiling
    asymptotically instead of ever claiming completion.
    """
    if elapsed_seconds <= 0 or time_constant <= 0:
        return 0
    value = PROGRESS_CEILING * (1.0 - math.exp(-elapsed_seconds / time_constant))
    return min(PROGRESS_CEILING, int(value))


class ProgressTracker:
    """Progress of one in-flight call, snapped to 100 when it succeeds."""

    def __init__(
        self,
        time_constant: float = 8.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._time_constant = time_constant
        self._clock = clock
        self._started_at: Optional[float] = None
        self._final: Optional[int] = None

    def start(self) -> None:
        self._started_at = self._clock()
        self._final = None

    def finish(self, succeeded: bool = True) -> None:
        self._final = 100 if succeeded else 0
        self._started_at = None

    @property
    def in_flight(self) -> bool:
        return self._started_at is not None

    def value(self) -> int:
        if self._final is not None:
            return self._final
        if self._started_at is None:
            return 0
        return estimate_progress(self._clock() - self._started_at, self._time_constant)
