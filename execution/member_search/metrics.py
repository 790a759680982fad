"""
Metrics Collection for Member Search

Tracks latency, cache effectiveness, degradation and rate limiting so the
fallback paths are visible in operation.
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
class QueryMetrics:
    """Metrics for a single query."""
    query_id: str
    tenant_id: str
    query_text: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    results_count: int = 0
    intent: str = ""
    route: str = ""
    cache_hit: bool = False
    slow_path: bool = False
    degraded_extraction: bool = False
    keyword_only: bool = False
    broadened: bool = False
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    # Query metrics
    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Result cache (searches that reached the ranker route)
    cache_hits: int = 0
    cache_misses: int = 0

    # Extraction
    slow_path_calls: int = 0
    degraded_extractions: int = 0

    # Ranking
    keyword_only_searches: int = 0
    broadened_searches: int = 0
    zero_result_searches: int = 0

    # Rate limiting
    rate_limited: dict = field(default_factory=lambda: defaultdict(int))

    # Error tracking
    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    # Per-tenant / per-route tracking
    queries_by_tenant: dict = field(default_factory=lambda: defaultdict(int))
    queries_by_route: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        if self.total_queries == 0:
            return 0
        return self.total_latency_ms / self.total_queries

    def _percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * fraction)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def p95_latency_ms(self) -> float:
        return self._percentile(0.95)

    @property
    def p99_latency_ms(self) -> float:
        return self._percentile(0.99)

    @property
    def cache_hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        if total == 0:
            return 0
        return self.cache_hits / total

    @property
    def error_rate(self) -> float:
        if self.total_queries == 0:
            return 0
        return self.failed_queries / self.total_queries

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "queries": {
                "total": self.total_queries,
                "successful": self.successful_queries,
                "failed": self.failed_queries,
                "error_rate": f"{self.error_rate:.2%}",
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
                "p99": round(self.p99_latency_ms, 2),
            },
            "result_cache": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate": f"{self.cache_hit_rate:.2%}",
            },
            "extraction": {
                "slow_path_calls": self.slow_path_calls,
                "degraded": self.degraded_extractions,
            },
            "ranking": {
                "keyword_only": self.keyword_only_searches,
                "broadened": self.broadened_searches,
                "zero_results": self.zero_result_searches,
            },
            "rate_limited": dict(self.rate_limited),
            "routes": dict(self.queries_by_route),
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Usage:
        collector = MetricsCollector()

        with collector.track_query(tenant_id, query_text) as tracker:
            response = orchestrator.search(...)
            tracker.set_results(len(response.members), cache_hit=response.cache_hit)

        metrics = collector.get_metrics()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._query_history: list[QueryMetrics] = []
        self._max_history = 1000  # Keep last 1000 queries
        self._start_time = datetime.now()
        self._lock = threading.Lock()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._query_history = []
            self._start_time = datetime.now()

    class QueryTracker:
        """Context manager for tracking query metrics."""

        def __init__(self, collector: 'MetricsCollector', tenant_id: str, query_text: str):
            self.collector = collector
            self.query = QueryMetrics(
                query_id=f"q_{int(time.time() * 1000)}",
                tenant_id=tenant_id,
                query_text=query_text[:200],  # Truncate for storage
                start_time=time.time(),
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.query.end_time = time.time()
            self.query.latency_ms = (self.query.end_time - self.query.start_time) * 1000

            if exc_type:
                self.query.error = str(exc_val)
                self.collector._record_error(exc_type.__name__)

            self.collector._record_query(self.query)
            return False  # Don't suppress exceptions

        def set_results(
            self,
            count: int,
            intent: str = "",
            route: str = "",
            cache_hit: bool = False,
            slow_path: bool = False,
            degraded_extraction: bool = False,
            keyword_only: bool = False,
            broadened: bool = False,
        ):
            """Set query result metadata."""
            self.query.results_count = count
            self.query.intent = intent
            self.query.route = route
            self.query.cache_hit = cache_hit
            self.query.slow_path = slow_path
            self.query.degraded_extraction = degraded_extraction
            self.query.keyword_only = keyword_only
            self.query.broadened = broadened

    def track_query(self, tenant_id: str, query_text: str) -> QueryTracker:
        """Create a query tracker context manager."""
        return self.QueryTracker(self, tenant_id, query_text)

    def _record_query(self, query: QueryMetrics):
        """Record completed query metrics."""
        with self._lock:
            m = self.metrics
            m.total_queries += 1

            if query.error:
                m.failed_queries += 1
            else:
                m.successful_queries += 1

            # Latency tracking
            m.total_latency_ms += query.latency_ms
            m.min_latency_ms = min(m.min_latency_ms, query.latency_ms)
            m.max_latency_ms = max(m.max_latency_ms, query.latency_ms)
            m.latencies.append(query.latency_ms)
            if len(m.latencies) > self._max_history:
                m.latencies = m.latencies[-self._max_history:]

            # Cache hit rate only counts searches
            if query.route == "member_search":
                if query.cache_hit:
                    m.cache_hits += 1
                else:
                    m.cache_misses += 1
                if query.keyword_only:
                    m.keyword_only_searches += 1
                if query.broadened:
                    m.broadened_searches += 1
                if not query.error and query.results_count == 0:
                    m.zero_result_searches += 1

            if query.slow_path:
                m.slow_path_calls += 1
            if query.degraded_extraction:
                m.degraded_extractions += 1

            m.queries_by_tenant[query.tenant_id] += 1
            if query.route:
                m.queries_by_route[query.route] += 1

            self._query_history.append(query)
            if len(self._query_history) > self._max_history:
                self._query_history = self._query_history[-self._max_history:]

    def _record_error(self, error_type: str):
        """Record an error by type."""
        with self._lock:
            self.metrics.errors_by_type[error_type] += 1

    def record_rate_limited(self, category: str):
        """Record a rejected request by rate-limit category."""
        with self._lock:
            self.metrics.rate_limited[category] += 1

    def get_metrics(self) -> SystemMetrics:
        """Get current metrics."""
        return self.metrics

    def get_metrics_dict(self) -> dict:
        """Get metrics as a dictionary."""
        with self._lock:
            return self.metrics.to_dict()

    def get_recent_queries(self, limit: int = 10) -> list[QueryMetrics]:
        """Get most recent queries."""
        return self._query_history[-limit:]

    def get_uptime(self) -> timedelta:
        """Get system uptime."""
        return datetime.now() - self._start_time

    def get_tenant_summary(self) -> dict:
        """Get per-tenant summary."""
        return {"queries_by_tenant": dict(self.metrics.queries_by_tenant)}


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
