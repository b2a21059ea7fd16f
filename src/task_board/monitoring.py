"""
Performance Monitoring

Collects request and broadcast timings plus process resource usage for the
/api/metrics endpoint.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

import psutil

# Keep the last 1000 data points for averages
METRICS_HISTORY_SIZE = 1000
SLOW_REQUEST_MS = 200
SLOW_BROADCAST_MS = 20

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetric:
    """Single performance measurement with timestamp."""
    timestamp: datetime
    value: float
    operation: str


class PerformanceMonitor:
    """
    Tracks request latency, change broadcast latency and daily counters.

    Daily counters (e.g. ``status_changes``, ``comments_added``) reset at
    UTC midnight.
    """

    def __init__(self):
        self.request_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.broadcast_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.daily_stats = defaultdict(int)
        self.start_time = datetime.now(timezone.utc)
        self._last_reset_date = self.start_time.date()

    def record_request_time(self, operation: str, duration_ms: float):
        self.request_times.append(
            PerformanceMetric(datetime.now(timezone.utc), duration_ms, operation)
        )
        if duration_ms > SLOW_REQUEST_MS:
            logger.warning(f"Slow request: {operation} took {duration_ms:.2f}ms")

    def record_broadcast_time(self, connection_count: int, duration_ms: float):
        """
        Record one change broadcast.

        Args:
            connection_count: Number of channels the change was sent to
            duration_ms: Total broadcast duration in milliseconds
        """
        per_connection_ms = duration_ms / max(connection_count, 1)
        self.broadcast_times.append(
            PerformanceMetric(datetime.now(timezone.utc), per_connection_ms,
                              f"broadcast_to_{connection_count}_connections")
        )
        if per_connection_ms > SLOW_BROADCAST_MS:
            logger.warning(f"Slow broadcast: {per_connection_ms:.2f}ms per connection")

    def increment_daily_stat(self, stat_name: str, amount: int = 1):
        self._check_daily_reset()
        self.daily_stats[stat_name] += amount

    def _check_daily_reset(self):
        current_date = datetime.now(timezone.utc).date()
        if current_date != self._last_reset_date:
            logger.info("Resetting daily statistics for new day")
            self.daily_stats.clear()
            self._last_reset_date = current_date

    def get_average_request_time(self) -> float:
        if not self.request_times:
            return 0.0
        return sum(m.value for m in self.request_times) / len(self.request_times)

    def get_average_broadcast_time(self) -> float:
        if not self.broadcast_times:
            return 0.0
        return sum(m.value for m in self.broadcast_times) / len(self.broadcast_times)

    def get_uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()

    def get_system_metrics(self) -> Dict[str, Any]:
        """Process memory and CPU usage; zeros if psutil cannot read them."""
        memory_usage_mb = 0.0
        cpu_usage_percent = 0.0
        try:
            process = psutil.Process()
            memory_usage_mb = process.memory_info().rss / 1024 / 1024
            cpu_usage_percent = process.cpu_percent()
        except (psutil.Error, OSError) as e:
            logger.warning(f"Failed to read process metrics: {e}")
        return {
            "memory_usage_mb": round(memory_usage_mb, 2),
            "cpu_usage_percent": cpu_usage_percent,
            "uptime_seconds": self.get_uptime_seconds(),
        }

    def get_performance_summary(self) -> Dict[str, Any]:
        self._check_daily_reset()
        return {
            "avg_request_time_ms": round(self.get_average_request_time(), 2),
            "avg_broadcast_time_ms": round(self.get_average_broadcast_time(), 2),
            "requests_recorded": len(self.request_times),
            "daily": dict(self.daily_stats),
        }


performance_monitor = PerformanceMonitor()
