"""
Token-bucket rate limiter for outbound sends.

Platform limits it protects against:
- Telegram: 30 messages/second per bot
- WhatsApp: ~1 message/second (conservative, avoids bans)
- Discord: 5 messages/5 seconds per channel
"""

import asyncio
import logging
import time
from typing import Any, Dict

from luvora.config import Settings
from luvora.messaging.types import Platform

logger = logging.getLogger(__name__)


class RateLimiter:
    """Waits callers out until a token is available."""

    def __init__(self, max_operations: int, window_ms: int, name: str = ""):
        self.max_tokens = float(max_operations)
        self.tokens = float(max_operations)
        self.refill_rate = max_operations / window_ms  # tokens per ms
        self.name = name
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed_ms = (now - self._last_refill) * 1000
        self.tokens = min(self.max_tokens, self.tokens + elapsed_ms * self.refill_rate)
        self._last_refill = now

    async def acquire(self) -> None:
        # The lock keeps waiters FIFO
        async with self._lock:
            self._refill()
            while self.tokens < 1:
                wait_ms = (1 - self.tokens) / self.refill_rate
                logger.debug("[RATE] %s waiting %.0fms", self.name, wait_ms)
                await asyncio.sleep(wait_ms / 1000)
                self._refill()
            self.tokens -= 1

    def status(self) -> Dict[str, Any]:
        self._refill()
        return {
            "name": self.name,
            "available_tokens": int(self.tokens),
            "max_tokens": int(self.max_tokens),
            "utilization_percent": round((self.max_tokens - self.tokens) / self.max_tokens * 100),
        }


def create_platform_rate_limiters(settings: Settings) -> Dict[Platform, RateLimiter]:
    return {
        Platform.TELEGRAM: RateLimiter(settings.telegram_rate_limit, settings.telegram_rate_window_ms, "telegram"),
        Platform.WHATSAPP: RateLimiter(settings.whatsapp_rate_limit, settings.whatsapp_rate_window_ms, "whatsapp"),
        Platform.DISCORD: RateLimiter(settings.discord_rate_limit, settings.discord_rate_window_ms, "discord"),
    }
