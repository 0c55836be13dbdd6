"""
Messaging Metrics: in-memory send/fail/latency counters per platform.

Counters accumulate from process start and are lost on restart; they feed
the monitoring endpoint only.

Usage:
    metrics = MessagingMetrics()
    bus.add_listener(metrics.handle_event)   # adapter send outcomes
    metrics.record_sent(Platform.TELEGRAM, latency_ms=120)  # stateless path

    metrics.get_metrics()
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from luvora.messaging.events import ChannelEvent, EventKind
from luvora.messaging.types import Platform

logger = logging.getLogger(__name__)

TOP_ERRORS = 5


@dataclass
class PlatformCounters:
    sent: int = 0
    failed: int = 0
    total_latency_ms: float = 0.0
    latency_samples: int = 0
    errors: Counter = field(default_factory=Counter)

    @property
    def success_rate(self) -> float:
        total = self.sent + self.failed
        if total == 0:
            return 100.0
        return round(self.sent / total * 100, 2)

    @property
    def avg_latency_ms(self) -> float:
        if self.latency_samples == 0:
            return 0.0
        return round(self.total_latency_ms / self.latency_samples, 2)


class MessagingMetrics:
    """Per-platform delivery counters. Increments are coarse-locked."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[Platform, PlatformCounters] = {p: PlatformCounters() for p in Platform}
        self.started_at = time.time()

    def record_sent(self, platform: Platform, latency_ms: Optional[float] = None) -> None:
        with self._lock:
            c = self._counters[platform]
            c.sent += 1
            if latency_ms is not None:
                c.total_latency_ms += latency_ms
                c.latency_samples += 1

    def record_failed(self, platform: Platform, category: str, latency_ms: Optional[float] = None) -> None:
        with self._lock:
            c = self._counters[platform]
            c.failed += 1
            c.errors[category or "unknown"] += 1
            if latency_ms is not None:
                c.total_latency_ms += latency_ms
                c.latency_samples += 1

    def handle_event(self, event: ChannelEvent) -> None:
        """Event-bus listener for adapter send outcomes."""
        if event.kind is EventKind.SENT:
            self.record_sent(event.identity.platform, event.payload.get("latency_ms"))
        elif event.kind is EventKind.SEND_FAILED:
            self.record_failed(
                event.identity.platform,
                event.payload.get("category", "unknown"),
                event.payload.get("latency_ms"),
            )

    @property
    def uptime_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)

    def get_platform_metrics(self, platform: Platform) -> Dict[str, Any]:
        with self._lock:
            c = self._counters[platform]
            top_errors = [{"error": err, "count": n} for err, n in c.errors.most_common(TOP_ERRORS)]
            return {
                "platform": platform.value,
                "sent": c.sent,
                "failed": c.failed,
                "success_rate": c.success_rate,
                "avg_latency_ms": c.avg_latency_ms,
                "top_errors": top_errors,
                "uptime_ms": self.uptime_ms,
            }

    def get_metrics(self) -> Dict[str, Any]:
        platforms = {p.value: self.get_platform_metrics(p) for p in Platform}
        total_sent = sum(m["sent"] for m in platforms.values())
        total_failed = sum(m["failed"] for m in platforms.values())
        total = total_sent + total_failed
        return {
            "summary": {
                "total_sent": total_sent,
                "total_failed": total_failed,
                "overall_success_rate": round(total_sent / total * 100, 2) if total else 100.0,
                "uptime_ms": self.uptime_ms,
            },
            "platforms": platforms,
        }
