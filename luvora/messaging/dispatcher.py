"""
Delivery Dispatcher: send one message to one recipient on one platform.

Two paths:
* **Stateless** (Telegram): a direct Bot API ``sendMessage`` call with the
  bot token; no registry lookup, no long-lived adapter needed.
* **Managed** (WhatsApp, Discord): the user's registry adapter must already
  be connected and linked. The dispatcher never starts one.

Every attempt ends up in the metrics counters and never raises; the
scheduled-delivery caller decides whether to retry on its next run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from luvora.config import Settings
from luvora.messaging.errors import ConfigurationInvalid, MessagingError, NotReady, SendFailed
from luvora.messaging.metrics import MessagingMetrics
from luvora.messaging.rate_limiter import RateLimiter
from luvora.messaging.registry import ChannelRegistry
from luvora.messaging.types import ChannelIdentity, ChannelState, Platform

logger = logging.getLogger(__name__)

STATELESS_PLATFORMS = frozenset({Platform.TELEGRAM})


@dataclass
class DeliveryTarget:
    """
    Who to deliver to. ``user_id`` resolves the managed adapter; ``chat_id``
    and ``bot_token`` drive the stateless path (and override the adapter's
    linked recipient on the managed one).
    """

    user_id: Optional[str] = None
    chat_id: Optional[str] = None
    bot_token: Optional[str] = None


@dataclass
class DeliveryResult:
    success: bool
    platform: Platform
    error: Optional[MessagingError] = None
    latency_ms: float = 0.0
    message_id: Optional[str] = None

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "platform": self.platform.value,
            "error": self.error.message if self.error else None,
            "latency_ms": round(self.latency_ms, 2),
            "message_id": self.message_id,
        }


class DeliveryDispatcher:
    def __init__(
        self,
        registry: ChannelRegistry,
        metrics: MessagingMetrics,
        settings: Settings,
        rate_limiters: Optional[Dict[Platform, RateLimiter]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._registry = registry
        self._metrics = metrics
        self._settings = settings
        self._rate_limiters = rate_limiters or {}
        self._http = http_client
        self._owns_http = http_client is None

    async def send(self, target: DeliveryTarget, platform: Platform, body: str) -> bool:
        result = await self.deliver(target, platform, body)
        return result.success

    async def deliver(self, target: DeliveryTarget, platform: Platform, body: str) -> DeliveryResult:
        limiter = self._rate_limiters.get(platform)
        if limiter is not None:
            await limiter.acquire()

        if platform in STATELESS_PLATFORMS:
            return await self._deliver_stateless(target, platform, body)
        return await self._deliver_managed(target, platform, body)

    # ── Stateless path ────────────────────────────────────────

    async def _deliver_stateless(self, target: DeliveryTarget, platform: Platform, body: str) -> DeliveryResult:
        t0 = time.monotonic()
        try:
            message_id = await self._telegram_send(target, body)
        except MessagingError as exc:
            latency_ms = (time.monotonic() - t0) * 1000
            category = exc.category if isinstance(exc, SendFailed) else exc.code.lower()
            self._metrics.record_failed(platform, category, latency_ms)
            logger.warning("[DISPATCH] Telegram send to %s failed: %s", target.chat_id, exc.message)
            return DeliveryResult(False, platform, exc, latency_ms)
        except Exception as exc:
            latency_ms = (time.monotonic() - t0) * 1000
            logger.exception("[DISPATCH] Unexpected Telegram send failure")
            self._metrics.record_failed(platform, type(exc).__name__, latency_ms)
            return DeliveryResult(False, platform, SendFailed(str(exc), platform), latency_ms)

        latency_ms = (time.monotonic() - t0) * 1000
        self._metrics.record_sent(platform, latency_ms)
        return DeliveryResult(True, platform, latency_ms=latency_ms, message_id=message_id)

    async def _telegram_send(self, target: DeliveryTarget, body: str) -> Optional[str]:
        token = target.bot_token or self._settings.telegram_bot_token
        if not token:
            raise ConfigurationInvalid("Missing Telegram bot token", Platform.TELEGRAM, "MISSING_TOKEN")
        if not target.chat_id:
            raise SendFailed("Missing Telegram chat id", Platform.TELEGRAM, "no_recipient")

        url = f"{self._settings.telegram_api_base}/bot{token}/sendMessage"
        payload = {"chat_id": target.chat_id, "text": body, "parse_mode": "HTML"}
        try:
            resp = await self._client().post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise SendFailed(f"Telegram timeout: {exc}", Platform.TELEGRAM, "timeout") from exc
        except httpx.TransportError as exc:
            raise SendFailed(f"Telegram unreachable: {exc}", Platform.TELEGRAM, "network") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code != 200 or not data.get("ok"):
            description = data.get("description") or f"HTTP {resp.status_code}"
            raise SendFailed(
                f"Telegram API error: {description}", Platform.TELEGRAM, _telegram_category(resp.status_code)
            )
        result = data.get("result") or {}
        message_id = result.get("message_id")
        return str(message_id) if message_id is not None else None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._settings.http_timeout_seconds)
        return self._http

    # ── Managed path ──────────────────────────────────────────

    async def _deliver_managed(self, target: DeliveryTarget, platform: Platform, body: str) -> DeliveryResult:
        channel = None
        if target.user_id:
            channel = self._registry.get_channel(ChannelIdentity(target.user_id, platform))

        if channel is None or channel.state is not ChannelState.CONNECTED or not channel.is_linked():
            error = NotReady(f"{platform.value} channel not ready for user {target.user_id}", platform)
            self._metrics.record_failed(platform, "not_ready", 0.0)
            logger.warning("[DISPATCH] %s", error.message)
            return DeliveryResult(False, platform, error)

        t0 = time.monotonic()
        try:
            # The adapter publishes the outcome; metrics count it from the event.
            await channel.send(target.chat_id, body)
        except MessagingError as exc:
            return DeliveryResult(False, platform, exc, (time.monotonic() - t0) * 1000)
        except Exception as exc:
            logger.exception("[DISPATCH] Unexpected %s send failure", platform.value)
            self._metrics.record_failed(platform, type(exc).__name__)
            return DeliveryResult(False, platform, SendFailed(str(exc), platform), (time.monotonic() - t0) * 1000)

        logger.info("[DISPATCH] Message sent via %s for user %s", platform.value, target.user_id)
        return DeliveryResult(True, platform, latency_ms=(time.monotonic() - t0) * 1000)

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None


def _telegram_category(status_code: int) -> str:
    return {
        400: "bad_request",
        401: "invalid_token",
        403: "forbidden",
        404: "invalid_token",
        429: "rate_limited",
    }.get(status_code, "http_error")
