"""
Shared fixtures for the messaging tests.

``FakeChannel`` is a scripted adapter: it goes through the real BaseChannel
state machine but its platform hooks are controlled by the test.
"""

import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio

from luvora.config import Settings
from luvora.messaging.channels.base import BaseChannel
from luvora.messaging.errors import ConfigurationInvalid
from luvora.messaging.events import ChannelEvent, ChannelEventBus
from luvora.messaging.metrics import MessagingMetrics
from luvora.messaging.pool import ConnectionPool
from luvora.messaging.registry import ChannelRegistry
from luvora.messaging.store import InMemoryConfigStore
from luvora.messaging.types import ChannelConfig, ChannelIdentity, Platform


class FakeChannel(BaseChannel):
    """Adapter with no transport. Token ``bad`` fails validation."""

    needs_pairing = {Platform.WHATSAPP}

    def __init__(self, identity, config, events, settings, connect_delay: float = 0.0):
        self.platform = identity.platform
        super().__init__(identity, config, events, settings)
        self.connect_delay = connect_delay
        self.delivered: List[tuple] = []
        self.disconnects = 0
        self.qr: Optional[str] = None

    def is_linked(self) -> bool:
        return self.linked and self.state.value == "connected"

    def has_session(self) -> bool:
        return False

    async def _validate(self) -> None:
        if self.config.bot_token == "bad":
            raise ConfigurationInvalid("Bot token validation failed", self.platform, "INVALID_TOKEN")

    async def _connect(self) -> bool:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        return self.platform not in self.needs_pairing

    async def _disconnect(self) -> None:
        self.disconnects += 1

    async def _deliver(self, target: Optional[str], body: str) -> None:
        if body == "boom":
            raise ConnectionError("socket closed")
        self.delivered.append((target or self.recipient_id, body))

    @property
    def pending_qr(self) -> Optional[str]:
        return self.qr if self.state.value == "linking" else None

    def pair(self) -> None:
        self._mark_linked(phone_number="15551234567")


def fake_factory(identity, config, events, settings):
    return FakeChannel(identity, config, events, settings)


class FlakyStore(InMemoryConfigStore):
    """Config store that is unreachable for the first ``outages`` reads."""

    def __init__(self, outages):
        super().__init__()
        self.outages = outages
        self.reads = 0

    async def list_enabled(self):
        self.reads += 1
        if self.reads <= self.outages:
            raise ConnectionError("config store unreachable")
        return await super().list_enabled()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        max_telegram_connections=2,
        max_whatsapp_connections=2,
        max_discord_connections=2,
        telegram_bot_token="123:default",
    )


@pytest.fixture
def events():
    return ChannelEventBus()


@pytest.fixture
def recorded(events):
    """Every event published on the bus, in order."""
    seen: List[ChannelEvent] = []
    events.add_listener(seen.append)
    return seen


@pytest.fixture
def pool(settings):
    return ConnectionPool.from_settings(settings)


@pytest.fixture
def metrics(events):
    m = MessagingMetrics()
    events.add_listener(m.handle_event)
    return m


@pytest.fixture
def registry(pool, events, settings, metrics):
    return ChannelRegistry(pool, events, settings, channel_factory=fake_factory)


@pytest.fixture
def config():
    return ChannelConfig(bot_token="123:abc")


def ident(user_id: str, platform: Platform = Platform.TELEGRAM) -> ChannelIdentity:
    return ChannelIdentity(user_id, platform)
