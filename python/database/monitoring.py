"""
Performance Monitoring for the Screening Core

This module provides:
- Query timing context manager for slow query detection
- Prometheus metrics for queries, screenings and scheduler sweeps
- Database health status with connection pool figures

Usage:
    from database.monitoring import query_timer, get_db_metrics

    with query_timer("find_candidates"):
        candidates = repo.search_by_name(name, SanctionsList.OFAC, 0.85)
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import Counter, Gauge, Histogram
from sqlalchemy import text

from screening_models import utc_now

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    slow_query_threshold_ms: float = 1000.0  # Log queries slower than this
    warning_threshold_ms: float = 500.0
    enable_prometheus: bool = True
    enable_logging: bool = True


_config = MonitoringConfig()


def configure_monitoring(
    slow_query_threshold_ms: float = 1000.0,
    warning_threshold_ms: float = 500.0,
    enable_prometheus: bool = True,
    enable_logging: bool = True
) -> None:
    """
    Configure monitoring settings.

    Args:
        slow_query_threshold_ms: Log queries slower than this (ms)
        warning_threshold_ms: Log an info line for queries slower than this (ms)
        enable_prometheus: Enable Prometheus metrics
        enable_logging: Enable logging
    """
    global _config
    _config = MonitoringConfig(
        slow_query_threshold_ms=slow_query_threshold_ms,
        warning_threshold_ms=warning_threshold_ms,
        enable_prometheus=enable_prometheus,
        enable_logging=enable_logging
    )


# ============================================
# PROMETHEUS METRICS
# ============================================

db_query_duration = Histogram(
    'screening_core_db_query_duration_seconds',
    'Database query duration in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

db_slow_queries_total = Counter(
    'screening_core_db_slow_queries_total',
    'Total number of slow database queries',
    ['operation']
)

screenings_total = Counter(
    'screening_core_screenings_total',
    'Screenings performed, by kind and outcome',
    ['kind', 'outcome']
)

screening_duration = Histogram(
    'screening_core_screening_duration_seconds',
    'Duration of a single screening',
    ['kind'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

schedule_executions_total = Counter(
    'screening_core_schedule_executions_total',
    'Scheduled screening executions, by status',
    ['status']
)

db_pool_checked_out = Gauge(
    'screening_core_db_pool_checked_out',
    'Number of connections currently checked out'
)


# ============================================
# QUERY STATS TRACKING
# ============================================

@dataclass
class QueryStats:
    """Statistics for a single query type."""
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    max_time_ms: float = 0.0
    errors: int = 0
    slow_queries: int = 0

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        self.count += 1
        self.total_time_ms += duration_ms
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        if error:
            self.errors += 1
        if slow:
            self.slow_queries += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'avg_time_ms': round(self.avg_time_ms, 2),
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow_queries': self.slow_queries,
        }


class QueryStatsCollector:
    """Thread-safe collector for query statistics."""

    def __init__(self):
        self._stats: Dict[str, QueryStats] = {}
        self._lock = threading.Lock()
        self._start_time = time.monotonic()

    def record(self, operation: str, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        with self._lock:
            if operation not in self._stats:
                self._stats[operation] = QueryStats(operation=operation)
            self._stats[operation].record(duration_ms, error, slow)

    def get_stats(self, operation: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if operation:
                stat = self._stats.get(operation)
                return stat.to_dict() if stat else {}
            return {
                'uptime_seconds': round(time.monotonic() - self._start_time, 3),
                'operations': {op: stats.to_dict() for op, stats in self._stats.items()}
            }

    def get_slow_queries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [s.to_dict() for s in self._stats.values() if s.slow_queries > 0]

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = time.monotonic()


_stats_collector = QueryStatsCollector()


def get_db_metrics() -> Dict[str, Any]:
    """Current query statistics"""
    return _stats_collector.get_stats()


def get_slow_query_report() -> List[Dict[str, Any]]:
    return _stats_collector.get_slow_queries()


def reset_metrics() -> None:
    """Reset collected query statistics (Prometheus counters are cumulative)."""
    _stats_collector.reset()


# ============================================
# QUERY TIMER
# ============================================

@contextmanager
def query_timer(operation: str):
    """
    Context manager to time and monitor database queries.

    Args:
        operation: Name of the operation (e.g., 'find_candidates', 'find_due')
    """
    start_time = time.perf_counter()
    error_occurred = False

    try:
        yield
    except Exception:
        error_occurred = True
        raise
    finally:
        duration = time.perf_counter() - start_time
        duration_ms = duration * 1000
        is_slow = duration_ms > _config.slow_query_threshold_ms
        is_warning = duration_ms > _config.warning_threshold_ms

        _stats_collector.record(operation, duration_ms, error=error_occurred, slow=is_slow)

        if _config.enable_prometheus:
            status = "error" if error_occurred else "success"
            db_query_duration.labels(operation=operation, status=status).observe(duration)
            if is_slow:
                db_slow_queries_total.labels(operation=operation).inc()

        if _config.enable_logging:
            if is_slow:
                logger.warning(
                    f"SLOW QUERY: {operation} took {duration_ms:.2f}ms "
                    f"(threshold: {_config.slow_query_threshold_ms}ms)"
                )
            elif is_warning and not error_occurred:
                logger.info(f"Query {operation} took {duration_ms:.2f}ms")


def timed_query(operation: str):
    """
    Decorator to time and monitor database query methods.

    Usage:
        @timed_query("find_due")
        def find_due(self, as_of, limit):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with query_timer(operation):
                return func(*args, **kwargs)
        return wrapper
    return decorator


# ============================================
# SCREENING METRICS
# ============================================

def record_screening(kind: str, outcome: str, duration_seconds: float) -> None:
    """
    Record one screening.

    Args:
        kind: 'sanctions' or 'pep'
        outcome: 'clear', 'match' or 'error'
        duration_seconds: Wall time of the screening
    """
    if not _config.enable_prometheus:
        return
    screenings_total.labels(kind=kind, outcome=outcome).inc()
    screening_duration.labels(kind=kind).observe(duration_seconds)


def record_schedule_sweep(summary: Dict[str, Any]) -> None:
    """Record the counts of a scheduler sweep summary."""
    if not _config.enable_prometheus:
        return
    for status in ('successful', 'failed', 'skipped'):
        count = summary.get(status, 0)
        if count:
            schedule_executions_total.labels(status=status).inc(count)


# ============================================
# HEALTH CHECK
# ============================================

@dataclass
class HealthStatus:
    """Database health status."""
    healthy: bool
    latency_ms: float
    pool_checked_out: int = 0
    error: Optional[str] = None
    timestamp: Any = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'healthy': self.healthy,
            'latency_ms': round(self.latency_ms, 2),
            'pool_checked_out': self.pool_checked_out,
            'error': self.error,
            'timestamp': self.timestamp.isoformat()
        }


def check_health(engine, session_factory) -> HealthStatus:
    """
    Perform database health check with metrics.

    Args:
        engine: SQLAlchemy Engine
        session_factory: SQLAlchemy session factory

    Returns:
        HealthStatus with check results
    """
    start_time = time.perf_counter()

    try:
        session = session_factory()
        try:
            session.execute(text("SELECT 1"))
        finally:
            session.close()
    except Exception as e:
        latency = (time.perf_counter() - start_time) * 1000
        logger.error(f"Database health check failed: {e}")
        return HealthStatus(healthy=False, latency_ms=latency, error=str(e))

    latency = (time.perf_counter() - start_time) * 1000
    checked_out = 0
    pool = engine.pool
    if hasattr(pool, 'checkedout'):
        checked_out = pool.checkedout()
        if _config.enable_prometheus:
            db_pool_checked_out.set(checked_out)
    return HealthStatus(healthy=True, latency_ms=latency, pool_checked_out=checked_out)
