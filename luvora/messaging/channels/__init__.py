"""Messaging channel adapters (Telegram, WhatsApp, Discord)."""

from typing import Dict, Type

from luvora.config import Settings
from luvora.messaging.channels.base import BaseChannel
from luvora.messaging.events import ChannelEventBus
from luvora.messaging.types import ChannelConfig, ChannelIdentity, Platform


def _adapter_classes() -> Dict[Platform, Type[BaseChannel]]:
    from luvora.messaging.channels.discord_channel import DiscordChannel
    from luvora.messaging.channels.telegram_channel import TelegramChannel
    from luvora.messaging.channels.whatsapp_channel import WhatsAppChannel

    return {
        Platform.TELEGRAM: TelegramChannel,
        Platform.WHATSAPP: WhatsAppChannel,
        Platform.DISCORD: DiscordChannel,
    }


def build_channel(
    identity: ChannelIdentity,
    config: ChannelConfig,
    events: ChannelEventBus,
    settings: Settings,
) -> BaseChannel:
    """Construct the adapter for ``identity.platform``."""
    adapter_cls = _adapter_classes()[identity.platform]
    return adapter_cls(identity, config, events, settings)


__all__ = ["BaseChannel", "build_channel"]
