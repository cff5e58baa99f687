"""
In-process metrics collector for latency percentiles and counters.

Why not Prometheus?
  - This is a library; no scrape target is guaranteed to exist.
  - This gives P50/P95/P99 per instrumented operation without any infra.
  - Counters track sink delivery (delivered / dropped) per sink.

Thread-safety: record() and increment() are called from caller threads
and sink consumer threads concurrently, so every mutation takes the lock.
"""

from __future__ import annotations

import statistics
import threading
import time
from collections import defaultdict, deque
from typing import Dict, Any, Optional

from configs.settings import get_settings


class MetricsCollector:
    """Process-global, thread-safe latency and counter tracker."""

    def __init__(self, window: Optional[int] = None) -> None:
        # Last `window` observations per metric: bounded memory
        # regardless of call volume.
        self._window = window or get_settings().metrics_window
        self._data: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self._window))
        self._counts: Dict[str, int] = defaultdict(int)
        self._counters: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()
        self._start_time = time.monotonic()

    def record(self, name: str, value_ms: float) -> None:
        """Record a latency observation in milliseconds."""
        with self._lock:
            self._data[name].append(value_ms)
            self._counts[name] += 1

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def reset(self) -> None:
        with self._lock:
            self._data.clear()
            self._counts.clear()
            self._counters.clear()

    def snapshot(self) -> Dict[str, Any]:
        """Return a JSON-serializable dict of all metrics with percentiles."""
        with self._lock:
            result: Dict[str, Any] = {
                "uptime_seconds": round(time.monotonic() - self._start_time, 1),
                "counters": dict(self._counters),
            }
            for name, values in self._data.items():
                vals = sorted(values)
                n = len(vals)
                if n == 0:
                    continue
                result[name] = {
                    "count": self._counts[name],
                    "window": n,
                    "p50_ms": round(vals[n // 2], 3),
                    "p95_ms": round(vals[int(n * 0.95)], 3) if n >= 20 else None,
                    "p99_ms": round(vals[int(n * 0.99)], 3) if n >= 100 else None,
                    "mean_ms": round(statistics.mean(vals), 3),
                    "min_ms": round(vals[0], 3),
                    "max_ms": round(vals[-1], 3),
                }
            return result


# Singleton — import this wherever you need metrics.
metrics = MetricsCollector()
