"""
Metrics Collection for the engine.

Counters and timers for event processing, queue retries and delivery.
One collector is owned by each engine instance.
"""

from typing import Dict, Any
from collections import defaultdict
from datetime import datetime, timezone
import threading

COUNTERS = (
    "events_received_total",
    "events_notified_total",
    "events_duplicate_total",
    "events_suppressed_total",
    "events_failed_total",
    "queue_retries_total",
    "notifications_delivered_total",
    "notifications_failed_total",
    "notifications_cancelled_total",
    "bundles_created_total",
    "ticks_total",
    "ticks_skipped_total",
)


class MetricsCollector:
    """Collects and manages metrics for the engine."""

    def __init__(self):
        """Initialize metrics collector."""
        self.metrics = defaultdict(int)
        self.timers = defaultdict(float)
        self.lock = threading.Lock()

        for name in COUNTERS:
            self.metrics[name] = 0

    def increment_counter(self, metric_name: str, value: int = 1):
        """Increment a counter metric."""
        with self.lock:
            self.metrics[metric_name] += value

    def record_timer(self, metric_name: str, duration: float):
        """Record a timing metric."""
        with self.lock:
            self.timers[metric_name] += duration

    def get(self, metric_name: str) -> int:
        with self.lock:
            return self.metrics[metric_name]

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics values."""
        with self.lock:
            return {
                "counters": dict(self.metrics),
                "timers": dict(self.timers),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
