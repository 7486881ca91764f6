from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class AttemptBudget:
    """Wall-clock budget shared by every upstream call of one request.

    Remaining time is derived from the clock on each read, so it shrinks
    implicitly as attempts run.
    """

    total_ms: int
    guard_ms: int
    clock: Callable[[], float] = time.monotonic
    started_at: float | None = None
    _started: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._started = self.started_at if self.started_at is not None else self.clock()

    def elapsed_ms(self) -> int:
        return max(0, int((self.clock() - self._started) * 1000))

    def remaining_ms(self) -> int:
        return self.total_ms - self.elapsed_ms()

    def attempt_timeout_ms(self, cap_ms: int) -> int:
        """min(cap, remaining - guard), never below zero."""
        return max(0, min(cap_ms, self.remaining_ms() - self.guard_ms))

    def can_afford(self, reserve_ms: int) -> bool:
        return self.remaining_ms() > self.guard_ms + reserve_ms
