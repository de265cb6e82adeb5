"""In-process counters, gauges and timings.

The running scheduler logs ``metrics.snapshot()`` and saves it to
``runtime_state`` every few ticks and on stop; ``bot status`` reads that
saved copy, since a separate CLI process has no metrics of its own.
Timings keep a bounded window per name (tick duration, payout sends,
resolution polls) so a long-running bot does not grow without limit.
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator

_TIMING_WINDOW = 500


class MetricsCollector:
    """Thread-safe in-process metrics collector."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._timings: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=_TIMING_WINDOW)
        )
        self._started = time.time()

    def incr(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += value

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def observe(self, name: str, seconds: float) -> None:
        with self._lock:
            self._timings[name].append(seconds)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Record the wall time of the block, even when it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - start)

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def timing_summary(self, name: str) -> dict[str, float] | None:
        with self._lock:
            window = self._timings.get(name)
            if not window:
                return None
            return _summarize(window)

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable snapshot of all metrics."""
        with self._lock:
            return {
                "uptime_secs": round(time.time() - self._started, 1),
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timings": {k: _summarize(v) for k, v in self._timings.items() if v},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()


def _summarize(window: deque[float]) -> dict[str, float]:
    ordered = sorted(window)
    return {
        "count": len(ordered),
        "avg": round(sum(ordered) / len(ordered), 4),
        "p50": round(ordered[len(ordered) // 2], 4),
        "max": round(ordered[-1], 4),
    }


# Global singleton
metrics = MetricsCollector()
