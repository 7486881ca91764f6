from __future__ import annotations

import json
import logging
import math
import time
from threading import Lock
from typing import Any, Callable

try:
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None

from app.core.metrics import metrics

logger = logging.getLogger(__name__)


class MemoryStore:
    """Process-local keyed store.

    Entries age out through their expiry timestamp on read; nothing is torn
    down on shutdown.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._store: dict[str, tuple[float | None, Any]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and expires_at <= self._clock():
            self._store.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = None
        if ttl is not None:
            expires_at = self._clock() + ttl
        self._store[key] = (expires_at, value)

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def incr_window(self, key: str, window_ms: int) -> tuple[int, int]:
        """Count one hit in the fixed window at `key`.

        Returns the count so far and the milliseconds until the window
        resets. Only the first hit of a window sets its expiry.
        """
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None or entry[0] is None or entry[0] <= now or not isinstance(entry[1], int):
                expires_at = now + window_ms / 1000.0
                value = 1
            else:
                expires_at, value = entry[0], entry[1] + 1
            self._store[key] = (expires_at, value)
        return value, max(0, int(round((expires_at - now) * 1000)))

    def __len__(self) -> int:
        return len(self._store)


class RedisStore:
    def __init__(self, client: Any, clock: Callable[[], float] = time.time) -> None:
        self._redis = client
        self._local = MemoryStore(clock)

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisStore":
        if redis is None:
            raise RuntimeError("redis dependency is required when GATEWAY_REDIS_URL is set")
        return cls(redis.Redis.from_url(redis_url, decode_responses=True))

    def get(self, key: str) -> Any | None:
        try:
            raw = self._redis.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as exc:
            logger.warning("store redis get failed: %s", exc)
            metrics.inc("gateway_store_errors_total", {"op": "get"})
        return self._local.get(key)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        try:
            payload = json.dumps(value, ensure_ascii=False)
            if ttl is not None:
                self._redis.setex(key, max(1, math.ceil(ttl)), payload)
            else:
                self._redis.set(key, payload)
            return
        except Exception as exc:
            logger.warning("store redis set failed: %s", exc)
            metrics.inc("gateway_store_errors_total", {"op": "set"})
        self._local.set(key, value, ttl)

    def delete(self, key: str) -> None:
        self._local.delete(key)
        try:
            self._redis.delete(key)
        except Exception as exc:
            logger.warning("store redis delete failed: %s", exc)
            metrics.inc("gateway_store_errors_total", {"op": "delete"})

    def incr_window(self, key: str, window_ms: int) -> tuple[int, int]:
        try:
            count = int(self._redis.incr(key))
            if count == 1:
                self._redis.pexpire(key, window_ms)
                return count, window_ms
            ttl_ms = int(self._redis.pttl(key))
            if ttl_ms < 0:
                # key outlived a failed PEXPIRE; restart the window from now
                self._redis.pexpire(key, window_ms)
                ttl_ms = window_ms
            return count, ttl_ms
        except Exception as exc:
            logger.warning("store redis incr failed: %s", exc)
            metrics.inc("gateway_store_errors_total", {"op": "incr"})
        return self._local.incr_window(key, window_ms)


def build_store(redis_url: str | None, clock: Callable[[], float] = time.time) -> MemoryStore | RedisStore:
    if redis_url:
        return RedisStore.from_url(redis_url)
    return MemoryStore(clock)
