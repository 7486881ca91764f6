from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    remaining: int
    retry_after_ms: int

    @property
    def retry_after_sec(self) -> int:
        # ceil without going through float rounding
        return max(0, -(-self.retry_after_ms // 1000))


class RateLimiter:
    """Fixed-window request counter per client key.

    Counting goes through the store's atomic `incr_window`, so replicas
    sharing one Redis store share one quota. Rejected hits are counted too
    but never move the window's reset time.
    """

    def __init__(
        self,
        store: Any,
        max_requests: int,
        window_ms: int,
        key_prefix: str = "ratelimit:",
    ) -> None:
        self.store = store
        self.max_requests = max(1, max_requests)
        self.window_ms = max(1, window_ms)
        self._prefix = key_prefix

    def check(self, key: str) -> RateLimitDecision:
        count, retry_after_ms = self.store.incr_window(f"{self._prefix}{key}", self.window_ms)
        if count > self.max_requests:
            return RateLimitDecision(allowed=False, count=count, remaining=0, retry_after_ms=retry_after_ms)
        return RateLimitDecision(
            allowed=True,
            count=count,
            remaining=self.max_requests - count,
            retry_after_ms=retry_after_ms,
        )

    def allow(self, key: str) -> bool:
        return self.check(key).allowed
