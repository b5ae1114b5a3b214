"""
Request and delivery metrics for the /status endpoint.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, List


class MetricsCollector:
    """Collect request latency and per-channel delivery outcomes."""

    def __init__(self, max_samples: int = 1000):
        self._lock = threading.Lock()
        self._max_samples = max_samples
        self.request_latency_ms: List[float] = []
        self.success_count = 0
        self.error_count = 0
        self.endpoint_stats: Dict[str, Dict[str, Any]] = {}
        self.delivery_stats: Dict[str, Dict[str, Any]] = {}

    def record_request(self, endpoint: str, latency_ms: float, status: int) -> None:
        """Record a request metric."""
        with self._lock:
            self.request_latency_ms.append(latency_ms)
            if len(self.request_latency_ms) > self._max_samples:
                self.request_latency_ms.pop(0)

            if status < 400:
                self.success_count += 1
            else:
                self.error_count += 1

            stats = self.endpoint_stats.setdefault(
                endpoint,
                {
                    "total_requests": 0,
                    "total_latency_ms": 0.0,
                    "error_count": 0,
                    "last_called": None,
                },
            )
            stats["total_requests"] += 1
            stats["total_latency_ms"] += latency_ms
            if status >= 400:
                stats["error_count"] += 1
            stats["last_called"] = datetime.now(timezone.utc).isoformat()

    def record_delivery(self, channel: str, success: bool) -> None:
        """Record one delivery attempt on a channel."""
        with self._lock:
            stats = self.delivery_stats.setdefault(
                channel,
                {"attempts": 0, "succeeded": 0, "failed": 0, "last_attempt": None},
            )
            stats["attempts"] += 1
            if success:
                stats["succeeded"] += 1
            else:
                stats["failed"] += 1
            stats["last_attempt"] = datetime.now(timezone.utc).isoformat()

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        with self._lock:
            latencies = sorted(self.request_latency_ms)
            total = self.success_count + self.error_count
            return {
                "total_requests": total,
                "success_count": self.success_count,
                "error_count": self.error_count,
                "error_rate": self.error_count / total if total else 0,
                "request_latency_ms": {
                    "min": latencies[0] if latencies else 0,
                    "max": latencies[-1] if latencies else 0,
                    "avg": sum(latencies) / len(latencies) if latencies else 0,
                    "p50": latencies[len(latencies) // 2] if latencies else 0,
                    "p95": latencies[int(len(latencies) * 0.95)] if latencies else 0,
                },
                "endpoints": {name: dict(stats) for name, stats in self.endpoint_stats.items()},
                "delivery": {name: dict(stats) for name, stats in self.delivery_stats.items()},
            }
