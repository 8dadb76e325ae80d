# bothost/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from bothost.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Counter:
    """Simple counter metric"""
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Track distribution of values (e.g., handler durations)"""
    values: list[float] = field(default_factory=list)

    def observe(self, value: float) -> None:
        self.values.append(value)

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

        sorted_values = sorted(self.values)
        count = len(sorted_values)

        def percentile(p: float) -> float:
            idx = int(count * p)
            return sorted_values[min(idx, count - 1)]

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / count,
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


class MetricsCollector:
    """
    Lightweight in-process metrics collection.
    """

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter metric"""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        """Add a value to histogram"""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_counter(self, name: str, **labels) -> int:
        """Current value of one counter (0 if never incremented)."""
        key = self._make_key(name, labels or None)
        with self._lock:
            counter = self._counters.get(key)
            return counter.value if counter else 0

    def get_metrics(self) -> dict:
        """Get all current metrics"""
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        """Reset all metrics"""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    def drop_series(self, **labels) -> int:
        """
        Remove every counter and histogram series carrying all of ``labels``.

        Returns the number of series removed.
        """
        if not labels:
            return 0
        wanted = {f"{k}={v}" for k, v in labels.items()}
        removed = 0
        with self._lock:
            for store in (self._counters, self._histograms):
                for key in [k for k in store if wanted <= self._split_labels(k)]:
                    del store[key]
                    removed += 1
        return removed

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        """Create a metric key from name and labels"""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    @staticmethod
    def _split_labels(key: str) -> set[str]:
        if not key.endswith("}") or "{" not in key:
            return set()
        return set(key[key.index("{") + 1:-1].split(","))


# Global metrics collector
_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector"""
    return _metrics


# Convenience functions
def inc_counter(name: str, amount: int = 1, **labels) -> None:
    """Increment a counter metric"""
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    """Record a histogram value"""
    _metrics.observe_histogram(name, value, labels or None)


# Context manager for timing operations
class Timer:
    """Context manager to time operations"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.monotonic() - self.start_time
            observe_histogram(self.metric_name, duration, **self.labels)


# Application-specific metrics
class AppMetrics:
    """Supervisor-level metrics tracking"""

    @staticmethod
    def session_started(bot_id: str) -> None:
        inc_counter("sessions_started_total", bot_id=bot_id)

    @staticmethod
    def session_failed(bot_id: str) -> None:
        inc_counter("sessions_failed_total", bot_id=bot_id)

    @staticmethod
    def session_stopped(bot_id: str) -> None:
        inc_counter("sessions_stopped_total", bot_id=bot_id)

    @staticmethod
    def command_dispatched(bot_id: str, command: str) -> None:
        inc_counter("commands_dispatched_total", bot_id=bot_id, command=command)

    @staticmethod
    def handler_error(bot_id: str, command: str) -> None:
        inc_counter("handler_errors_total", bot_id=bot_id, command=command)

    @staticmethod
    def persistence_error(operation: str) -> None:
        inc_counter("persistence_errors_total", operation=operation)

    @staticmethod
    def track_handler_time(bot_id: str, command: str) -> Timer:
        return Timer("handler_duration_seconds", bot_id=bot_id, command=command)

    @staticmethod
    def http_request(method: str, status: int, route: str) -> None:
        inc_counter("http_requests_total", method=method, status=status, route=route)

    @staticmethod
    def forget_bot(bot_id: str) -> None:
        """Drop every series of a deleted bot."""
        _metrics.drop_series(bot_id=bot_id)

    @staticmethod
    def forget_command(bot_id: str, command: str) -> None:
        _metrics.drop_series(bot_id=bot_id, command=command)
