"""
MessagingService: wires the messaging core together.

Built once by the process entry point and handed to whatever needs it; there
is no module-level instance.

Usage:
    service = MessagingService(settings)
    await service.initialize(store)
    ok = await service.dispatcher.send(DeliveryTarget(user_id="u1"), Platform.WHATSAPP, "Good morning ❤️")
    await service.shutdown()
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from luvora.config import Settings
from luvora.messaging.dispatcher import DeliveryDispatcher
from luvora.messaging.events import ChannelEventBus
from luvora.messaging.health import MessagingHealth
from luvora.messaging.metrics import MessagingMetrics
from luvora.messaging.pool import ConnectionPool
from luvora.messaging.rate_limiter import create_platform_rate_limiters
from luvora.messaging.registry import ChannelFactory, ChannelRegistry
from luvora.messaging.store import ChannelConfigStore

logger = logging.getLogger(__name__)


class MessagingService:
    def __init__(
        self,
        settings: Settings,
        channel_factory: Optional[ChannelFactory] = None,
        dispatcher: Optional[DeliveryDispatcher] = None,
    ):
        self.settings = settings
        self.events = ChannelEventBus()
        self.metrics = MessagingMetrics()
        self.events.add_listener(self.metrics.handle_event)
        self.pool = ConnectionPool.from_settings(settings)
        self.registry = ChannelRegistry(self.pool, self.events, settings, channel_factory)
        self.health = MessagingHealth(self.registry, self.pool, settings)
        self.dispatcher = dispatcher or DeliveryDispatcher(
            self.registry,
            self.metrics,
            settings,
            rate_limiters=create_platform_rate_limiters(settings),
        )
        self.store: Optional[ChannelConfigStore] = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self.registry.initialized

    async def initialize(self, store: Optional[ChannelConfigStore] = None) -> None:
        """Start every enabled stored channel. ``store`` is remembered for retries and reloads."""
        if store is not None:
            self.store = store
        async with self._init_lock:
            logger.info("[MESSAGING] Initializing...")
            await self.registry.initialize(self.store)

    async def initialize_with_retry(
        self,
        store: Optional[ChannelConfigStore] = None,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ) -> bool:
        """
        Call ``initialize`` until it succeeds, doubling the pause after each
        failure. Returns False once every attempt has failed.
        """
        attempts = attempts or self.settings.init_retry_attempts
        delay = self.settings.init_retry_base_delay_seconds if base_delay is None else base_delay
        for attempt in range(1, attempts + 1):
            try:
                await self.initialize(store)
                return True
            except Exception as e:
                logger.error("[MESSAGING] Initialization attempt %d/%d failed: %s", attempt, attempts, e)
                if attempt < attempts:
                    await asyncio.sleep(delay * 2 ** (attempt - 1))
        logger.error("[MESSAGING] Giving up on initialization; POST /messaging/initialize to retry")
        return False

    async def shutdown(self) -> None:
        logger.info("[MESSAGING] Shutting down...")
        await self.registry.shutdown()
        await self.dispatcher.aclose()
        logger.info("[MESSAGING] Shutdown complete")

    def get_health_status(self) -> Dict[str, Any]:
        return self.health.get_health_status().to_dict()

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.get_metrics()
