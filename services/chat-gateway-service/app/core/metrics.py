from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Mapping


class MetricRegistry:
    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._lock = Lock()

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        key = self.key(name, labels)
        with self._lock:
            self._counters[key] += value

    def get(self, name: str, labels: Mapping[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get(self.key(name, labels), 0)

    def snapshot(self, prefix: str | None = None) -> dict[str, int]:
        with self._lock:
            if not prefix:
                return dict(self._counters)
            return {key: value for key, value in self._counters.items() if key.startswith(prefix)}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()

    @staticmethod
    def key(name: str, labels: Mapping[str, str] | None = None) -> str:
        if not labels:
            return name
        parts = [f"{k}={labels[k]}" for k in sorted(labels.keys())]
        return f"{name}{{{','.join(parts)}}}"


metrics = MetricRegistry()
