"""
Messaging Health: operational snapshot derived from the registry and pool.

Keeps no state of its own; every call recomputes from the live handles.

Classification:
* ``unhealthy``: the registry has not been initialized
* ``degraded``: any issue, or any platform pool above 90% utilization
* ``healthy``: otherwise
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from luvora.config import Settings
from luvora.messaging.pool import ConnectionPool
from luvora.messaging.registry import ChannelRegistry
from luvora.messaging.types import ChannelState, Platform

logger = logging.getLogger(__name__)

DEGRADED_UTILIZATION = 0.9


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def http_status(self) -> int:
        return {"healthy": 200, "degraded": 207, "unhealthy": 503}[self.value]


@dataclass
class HealthReport:
    initialized: bool
    connections: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)
    checked_at: float = 0.0

    def __post_init__(self):
        if self.checked_at == 0.0:
            self.checked_at = time.time()

    @property
    def status(self) -> HealthStatus:
        if not self.initialized:
            return HealthStatus.UNHEALTHY
        if self.issues:
            return HealthStatus.DEGRADED
        if any(c["utilization"] > DEGRADED_UTILIZATION for c in self.connections.values()):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "initialized": self.initialized,
            "total_channels": sum(c["current"] for c in self.connections.values()),
            "connections": self.connections,
            "issues": list(self.issues),
        }


class MessagingHealth:
    """Computes health on demand from the registry and pool counters."""

    def __init__(self, registry: ChannelRegistry, pool: ConnectionPool, settings: Settings):
        self._registry = registry
        self._pool = pool
        self._settings = settings

    def get_health_status(self) -> HealthReport:
        now = time.time()
        grace = self._settings.error_grace_seconds
        watermark = self._settings.pool_high_watermark

        connections: Dict[str, Dict[str, Any]] = {}
        issues: List[str] = []

        for platform in Platform:
            pool_state = self._pool.state(platform)
            channels = self._registry.channels(platform)
            states = [ch.state for ch in channels]
            connections[platform.value] = {
                "current": pool_state.current,
                "max": pool_state.max,
                "utilization": round(pool_state.utilization, 4),
                "running": states.count(ChannelState.CONNECTED),
                "linking": states.count(ChannelState.LINKING),
                "errored": states.count(ChannelState.ERROR),
            }

            if pool_state.utilization >= watermark:
                issues.append(
                    f"{platform.value} connection pool at {pool_state.utilization * 100:.0f}% capacity"
                )

            for ch in channels:
                if ch.state is not ChannelState.ERROR or ch.error_since is None:
                    continue
                age = now - ch.error_since
                if age > grace:
                    reason = ch.last_error.message if ch.last_error else "unknown error"
                    issues.append(
                        f"{platform.value} channel for user {ch.identity.user_id} "
                        f"in error for {age:.0f}s: {reason}"
                    )

        return HealthReport(
            initialized=self._registry.initialized,
            connections=connections,
            issues=issues,
            checked_at=now,
        )

    def classify(self) -> HealthStatus:
        return self.get_health_status().status
