"""Failure taxonomy and execution budget shared by the lifecycle services."""

import enum
import time
from collections.abc import Callable


class FailureKind(enum.Enum):
    NOT_FOUND = "not_found"
    STORE_ERROR = "store_error"
    BATCH_COMMIT_FAILED = "batch_commit_failed"


class TimeBudget:
    """Wall-clock budget for a scheduled invocation.

    Callers check ``exceeded()`` between units of work; nothing is interrupted
    mid-write.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def exceeded(self) -> bool:
        return self.elapsed >= self.seconds
