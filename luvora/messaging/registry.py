"""
Channel Registry: sole owner of every running channel adapter.

The service layer uses the registry to:
* Start / stop a user's channel (idempotent, serialized per identity).
* Answer "is this user's channel running".
* Start every enabled stored channel on boot and stop all on shutdown.

Nothing else keeps a long-lived reference to an adapter.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from luvora.config import Settings
from luvora.messaging.channels import BaseChannel, build_channel
from luvora.messaging.errors import (
    CapacityExceeded,
    ConfigurationInvalid,
    MessagingError,
)
from luvora.messaging.events import ChannelEvent, ChannelEventBus, EventKind
from luvora.messaging.pool import ConnectionPool
from luvora.messaging.types import (
    TERMINAL_STATES,
    ChannelConfig,
    ChannelIdentity,
    ChannelState,
    Platform,
)

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[ChannelIdentity, ChannelConfig, ChannelEventBus, Settings], BaseChannel]


@dataclass
class ChannelResult:
    """Outcome of a registry operation. Errors are values, never raised."""

    ok: bool
    channel: Optional[BaseChannel] = None
    error: Optional[MessagingError] = None
    reused: bool = False

    @property
    def linked(self) -> bool:
        return bool(self.channel and self.channel.is_linked())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.ok, "reused": self.reused}
        if self.channel is not None:
            data["channel"] = self.channel.to_dict()
        if self.error is not None:
            data.update(self.error.to_dict())
        return data


@dataclass
class _IdentityLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ChannelRegistry:
    """Registry of per-user channel adapters keyed by ChannelIdentity."""

    def __init__(
        self,
        pool: ConnectionPool,
        events: ChannelEventBus,
        settings: Settings,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        self._pool = pool
        self._events = events
        self._settings = settings
        self._factory = channel_factory or build_channel
        self._channels: Dict[ChannelIdentity, BaseChannel] = {}
        self._locks: Dict[ChannelIdentity, _IdentityLock] = {}
        # Identities currently holding a pool slot
        self._slots: set = set()
        # Transport teardowns of handles that failed at runtime
        self._teardowns: set = set()
        self.initialized = False
        events.add_listener(self._on_event)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start_channel(self, identity: ChannelIdentity, config: ChannelConfig) -> ChannelResult:
        """
        Start ``identity``'s channel, or return the live one unchanged.

        An errored or stopped handle is retired first. A full pool returns
        CapacityExceeded before any adapter is built.
        """
        async with self._serialized(identity):
            existing = self._channels.get(identity)
            if existing is not None:
                if existing.state not in TERMINAL_STATES:
                    return ChannelResult(ok=True, channel=existing, reused=True)
                await self._retire(identity, existing)

            if not config.enabled:
                return ChannelResult(
                    ok=False,
                    error=ConfigurationInvalid("Channel is disabled", identity.platform, "DISABLED"),
                )

            if not self._pool.try_acquire(identity.platform):
                limit = self._pool.state(identity.platform).max
                return ChannelResult(
                    ok=False,
                    error=CapacityExceeded(
                        f"{identity.platform.value} connection limit reached ({limit})", identity.platform
                    ),
                )
            self._slots.add(identity)

            logger.info("[REGISTRY] Starting %s channel for user %s", identity.platform.value, identity.user_id)
            try:
                channel = self._factory(identity, config, self._events, self._settings)
            except Exception as exc:
                logger.exception("[REGISTRY] Failed to build %s adapter", identity.platform.value)
                self._release_slot(identity)
                return ChannelResult(
                    ok=False,
                    error=ConfigurationInvalid(f"Cannot build adapter: {exc}", identity.platform),
                )

            self._channels[identity] = channel
            try:
                await channel.start()
            except MessagingError as exc:
                # The errored handle stays registered so status/health can report it.
                self._release_slot(identity)
                logger.warning("[REGISTRY] %s failed to start: %s", identity, exc.message)
                return ChannelResult(ok=False, channel=channel, error=exc)
            except asyncio.CancelledError:
                self._channels.pop(identity, None)
                self._release_slot(identity)
                raise

            return ChannelResult(ok=True, channel=channel)

    async def stop_channel(self, identity: ChannelIdentity) -> ChannelResult:
        """Stop and remove ``identity``'s channel. No-op success if absent."""
        async with self._serialized(identity):
            channel = self._channels.pop(identity, None)
            if channel is None:
                logger.debug("[REGISTRY] No channel to stop for %s", identity)
                return ChannelResult(ok=True)

            logger.info("[REGISTRY] Stopping %s channel for user %s", identity.platform.value, identity.user_id)
            try:
                await channel.stop()
            finally:
                self._release_slot(identity)
            return ChannelResult(ok=True, channel=channel)

    async def _retire(self, identity: ChannelIdentity, channel: BaseChannel) -> None:
        logger.info("[REGISTRY] Retiring %s handle for %s", channel.state.value, identity)
        await channel.stop()
        self._release_slot(identity)
        self._channels.pop(identity, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_channel(self, identity: ChannelIdentity) -> Optional[BaseChannel]:
        return self._channels.get(identity)

    def is_channel_running(self, identity: ChannelIdentity) -> bool:
        channel = self._channels.get(identity)
        return channel is not None and channel.state is ChannelState.CONNECTED

    def channels(self, platform: Optional[Platform] = None) -> List[BaseChannel]:
        return [
            ch for ident, ch in list(self._channels.items())
            if platform is None or ident.platform is platform
        ]

    def status(self) -> List[Dict]:
        """Status summary for each channel (for admin / debug endpoints)."""
        return [ch.to_dict() for ch in self.channels()]

    # ------------------------------------------------------------------
    # Bulk lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, store: Optional[Any] = None) -> None:
        """Start every enabled channel from ``store`` (a ChannelConfigStore)."""
        if self.initialized:
            logger.info("[REGISTRY] Already initialized")
            return

        if store is not None:
            records = await store.list_enabled()
            logger.info("[REGISTRY] Found %d enabled channels", len(records))
            for identity, config in records:
                result = await self.start_channel(identity, config)
                if not result.ok:
                    logger.error("[REGISTRY] Failed to start %s: %s", identity, result.error.message)

        self.initialized = True
        logger.info("[REGISTRY] Initialization complete")

    async def reload_user_channels(self, user_id: str, store: Any) -> List[ChannelResult]:
        """Restart all of one user's channels from fresh stored config."""
        logger.info("[REGISTRY] Reloading channels for user %s", user_id)
        for ident in [i for i in list(self._channels) if i.user_id == user_id]:
            await self.stop_channel(ident)

        results = []
        for platform in Platform:
            config = await store.find_config(user_id, platform)
            if config is None or not config.enabled:
                continue
            results.append(await self.start_channel(ChannelIdentity(user_id, platform), config))
        return results

    async def shutdown(self) -> None:
        """Stop every channel. Individual failures are logged, not raised."""
        logger.info("[REGISTRY] Shutting down %d channels...", len(self._channels))
        results = await asyncio.gather(
            *(self.stop_channel(ident) for ident in list(self._channels)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("[REGISTRY] Error during shutdown: %s", result)
        await self.wait_for_teardowns()
        self.initialized = False
        logger.info("[REGISTRY] Shutdown complete")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _serialized(self, identity: ChannelIdentity) -> AsyncIterator[None]:
        entry = self._locks.get(identity)
        if entry is None:
            entry = self._locks[identity] = _IdentityLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            # Nobody holds or waits on it any more
            if entry.users == 0 and self._locks.get(identity) is entry:
                del self._locks[identity]

    def _release_slot(self, identity: ChannelIdentity) -> None:
        if identity in self._slots:
            self._slots.discard(identity)
            self._pool.release(identity.platform)

    def _on_event(self, event: ChannelEvent) -> None:
        # A handle that fails on its own (gateway crash, logout) frees its slot
        # and its transport together. A failed start closes its own transport.
        if event.kind is not EventKind.STATE or event.payload.get("to") != ChannelState.ERROR.value:
            return
        channel = self._channels.get(event.identity)
        if channel is None:
            return
        self._release_slot(event.identity)
        if event.payload.get("from") != ChannelState.STARTING.value:
            task = asyncio.get_running_loop().create_task(channel.release_transport())
            self._teardowns.add(task)
            task.add_done_callback(self._teardowns.discard)

    async def wait_for_teardowns(self) -> None:
        """Wait until every errored handle has closed its transport."""
        while self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)
