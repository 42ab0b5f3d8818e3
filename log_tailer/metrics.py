"""Counters for tracking pipeline delivery."""

import logging

logger = logging.getLogger(__name__)


class DeliveryMetrics:
    """Counters shared by the tail readers and the delivery queue.

    Everything runs on one event loop, so no locking is needed.
    """

    def __init__(self):
        self._delivered = 0
        self._retried = 0
        self._failed = 0
        self._dropped = 0
        self._latencies: list[float] = []

    @property
    def delivered(self) -> int:
        return self._delivered

    @property
    def retried(self) -> int:
        return self._retried

    @property
    def failed(self) -> int:
        return self._failed

    @property
    def dropped(self) -> int:
        return self._dropped

    def record_delivered(self, latency_ms: float):
        """Record a successful insert with its latency in milliseconds."""
        self._delivered += 1
        self._latencies.append(latency_ms)

    def record_retry(self):
        self._retried += 1

    def record_failed(self):
        self._failed += 1

    def record_dropped(self):
        """Record a line dropped by its classifier."""
        self._dropped += 1

    def snapshot(self) -> dict:
        latencies = self._latencies
        return {
            "delivered": self._delivered,
            "retried": self._retried,
            "failed": self._failed,
            "dropped": self._dropped,
            "avg_latency_ms": sum(latencies) / len(latencies) if latencies else 0.0,
            "max_latency_ms": max(latencies) if latencies else 0.0,
        }

    def log_summary(self):
        snap = self.snapshot()
        logger.info(
            "Stats: delivered=%d retried=%d failed=%d dropped=%d "
            "avg_latency=%.1fms max_latency=%.1fms",
            snap["delivered"], snap["retried"], snap["failed"], snap["dropped"],
            snap["avg_latency_ms"], snap["max_latency_ms"],
        )
