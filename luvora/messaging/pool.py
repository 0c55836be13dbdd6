"""
Connection Pool Guard: per-platform ceiling on live adapters.

Each WhatsApp session is a headless browser, each token bot an open socket;
the ceilings keep one tenant's churn from starving the host. Counters change
under a lock with no suspension point, so concurrent starts for different
identities never lose an update.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from luvora.config import Settings
from luvora.messaging.types import Platform

logger = logging.getLogger(__name__)


@dataclass
class PoolState:
    current: int = 0
    max: int = 0
    total_acquired: int = 0
    total_rejected: int = 0
    underflows: int = 0

    @property
    def utilization(self) -> float:
        if self.max <= 0:
            return 1.0
        return self.current / self.max

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "max": self.max,
            "utilization": round(self.utilization, 4),
            "total_acquired": self.total_acquired,
            "total_rejected": self.total_rejected,
            "underflows": self.underflows,
        }


class ConnectionPool:
    """Atomic per-platform slot counters."""

    def __init__(self, limits: Mapping[Platform, int]):
        self._lock = threading.Lock()
        self._states: Dict[Platform, PoolState] = {
            platform: PoolState(max=int(limits.get(platform, 0))) for platform in Platform
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionPool":
        return cls({
            Platform.TELEGRAM: settings.max_telegram_connections,
            Platform.WHATSAPP: settings.max_whatsapp_connections,
            Platform.DISCORD: settings.max_discord_connections,
        })

    def try_acquire(self, platform: Platform) -> bool:
        """Take a slot. Returns False, changing nothing, when at capacity."""
        with self._lock:
            state = self._states[platform]
            if state.current >= state.max:
                state.total_rejected += 1
                logger.warning(
                    "[POOL] %s connection limit reached (%d/%d)", platform.value, state.current, state.max
                )
                return False
            state.current += 1
            state.total_acquired += 1
            logger.debug("[POOL] %s slot acquired (%d/%d)", platform.value, state.current, state.max)
            return True

    def release(self, platform: Platform) -> None:
        """Give a slot back. An underflow is clamped to zero and reported."""
        with self._lock:
            state = self._states[platform]
            if state.current <= 0:
                state.underflows += 1
                logger.warning("[POOL] Release of %s slot with none held; ignoring", platform.value)
                return
            state.current -= 1
            logger.debug("[POOL] %s slot released (%d/%d)", platform.value, state.current, state.max)

    def state(self, platform: Platform) -> PoolState:
        with self._lock:
            s = self._states[platform]
            return PoolState(s.current, s.max, s.total_acquired, s.total_rejected, s.underflows)

    def utilization(self, platform: Platform) -> float:
        return self.state(platform).utilization

    def snapshot(self) -> Dict[Platform, PoolState]:
        return {platform: self.state(platform) for platform in Platform}
