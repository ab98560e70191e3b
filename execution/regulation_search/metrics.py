"""
Metrics Collection for Regulation Search

Tracks latency, result counts, cache use and error kinds per operation
(keyword search, semantic search, ask, article fetch, ...).
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class OperationMetrics:
    """Metrics for a single tracked operation."""
    operation: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    results_count: int = 0
    cache_hit: bool = False
    error_kind: Optional[str] = None
    cancelled: bool = False


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cancelled_requests: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    total_results: int = 0

    cache_hits: int = 0
    cache_misses: int = 0

    errors_by_kind: dict = field(default_factory=lambda: defaultdict(int))
    requests_by_operation: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        if self.total_requests == 0:
            return 0
        return self.total_latency_ms / self.total_requests

    @property
    def p95_latency_ms(self) -> float:
        """Calculate 95th percentile latency."""
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def cache_hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        if total == 0:
            return 0
        return self.cache_hits / total

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0
        return self.failed_requests / self.total_requests

    def to_dict(self) -> dict:
        """Convert to dictionary for the metrics endpoint."""
        return {
            "requests": {
                "total": self.total_requests,
                "successful": self.successful_requests,
                "failed": self.failed_requests,
                "cancelled": self.cancelled_requests,
                "error_rate": f"{self.error_rate:.2%}",
                "by_operation": dict(self.requests_by_operation),
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
            },
            "results": {
                "total": self.total_results,
                "avg_per_request": round(
                    self.total_results / max(self.successful_requests, 1), 2
                ),
            },
            "cache": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate": f"{self.cache_hit_rate:.2%}",
            },
            "errors": dict(self.errors_by_kind),
        }


class MetricsCollector:
    """
    Collects and aggregates request metrics.

    One instance is owned by the API's service container.

    Usage:
        collector = MetricsCollector()

        with collector.track("search_keyword") as tracker:
            response = service.search(params)
            tracker.set_results(len(response.results))

        collector.get_metrics_dict()
    """

    def __init__(self, max_history: int = 1000):
        self.metrics = SystemMetrics()
        self._history: list[OperationMetrics] = []
        self._max_history = max_history
        self._start_time = datetime.now()
        self._lock = threading.Lock()

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._history = []
            self._start_time = datetime.now()

    class Tracker:
        """Context manager for tracking one operation."""

        def __init__(self, collector: 'MetricsCollector', operation: str):
            self.collector = collector
            self.record = OperationMetrics(operation=operation, start_time=time.time())
            self._results_set = False

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.record.end_time = time.time()
            self.record.latency_ms = (self.record.end_time - self.record.start_time) * 1000

            if exc_type and not issubclass(exc_type, Exception):
                # Client disconnect or task cancellation, not a failure
                self.record.cancelled = True
            elif exc_type:
                self.record.error_kind = getattr(exc_val, "kind", None) or exc_type.__name__

            self.collector._record(self.record, count_cache=self._results_set)
            return False  # Don't suppress exceptions

        def set_results(self, count: int, cache_hit: bool = False):
            self.record.results_count = count
            self.record.cache_hit = cache_hit
            self._results_set = True

    def track(self, operation: str) -> "MetricsCollector.Tracker":
        return self.Tracker(self, operation)

    def _record(self, record: OperationMetrics, count_cache: bool = True):
        with self._lock:
            m = self.metrics
            m.total_requests += 1
            m.requests_by_operation[record.operation] += 1

            if record.cancelled:
                m.cancelled_requests += 1
            elif record.error_kind:
                m.failed_requests += 1
                m.errors_by_kind[record.error_kind] += 1
            else:
                m.successful_requests += 1
                m.total_results += record.results_count

            m.total_latency_ms += record.latency_ms
            m.min_latency_ms = min(m.min_latency_ms, record.latency_ms)
            m.max_latency_ms = max(m.max_latency_ms, record.latency_ms)
            m.latencies.append(record.latency_ms)
            if len(m.latencies) > self._max_history:
                m.latencies = m.latencies[-self._max_history:]

            if count_cache:
                if record.cache_hit:
                    m.cache_hits += 1
                else:
                    m.cache_misses += 1

            self._history.append(record)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

    def get_metrics(self) -> SystemMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        data = self.metrics.to_dict()
        data["uptime_seconds"] = round(self.get_uptime().total_seconds(), 1)
        return data

    def get_recent(self, limit: int = 10) -> list[OperationMetrics]:
        return self._history[-limit:]

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time
