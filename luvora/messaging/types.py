"""
Messaging Types: identities, configuration and lifecycle states shared by
every channel adapter.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"
    DISCORD = "discord"


class ChannelState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    LINKING = "linking"      # Waiting for out-of-band pairing (QR scan)
    CONNECTED = "connected"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


# States that no longer hold a pool slot.
TERMINAL_STATES = frozenset({ChannelState.STOPPED, ChannelState.ERROR})

ALLOWED_TRANSITIONS: Dict[ChannelState, frozenset] = {
    ChannelState.IDLE: frozenset({ChannelState.STARTING, ChannelState.STOPPED}),
    ChannelState.STARTING: frozenset({
        ChannelState.LINKING, ChannelState.CONNECTED, ChannelState.ERROR, ChannelState.STOPPING,
    }),
    ChannelState.LINKING: frozenset({ChannelState.CONNECTED, ChannelState.ERROR, ChannelState.STOPPING}),
    ChannelState.CONNECTED: frozenset({ChannelState.ERROR, ChannelState.STOPPING}),
    ChannelState.ERROR: frozenset({ChannelState.STOPPING}),
    ChannelState.STOPPING: frozenset({ChannelState.STOPPED}),
    ChannelState.STOPPED: frozenset(),
}


@dataclass(frozen=True)
class ChannelIdentity:
    """One logical channel: a Luvora user on one platform."""

    user_id: str
    platform: Platform

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.platform.value}"

    def __str__(self) -> str:
        return self.key


class ChannelConfig(BaseModel):
    """
    Per-user channel configuration as stored in the ``messaging_channels``
    collection. Accepts the camelCase keys of the stored JSON blob.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = True
    bot_token: Optional[str] = Field(default=None, alias="botToken")
    bot_username: Optional[str] = Field(default=None, alias="botUsername")
    session_path: Optional[str] = Field(default=None, alias="sessionPath")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    recipient_id: Optional[str] = Field(default=None, alias="recipientId")
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    webhook_secret: Optional[str] = Field(default=None, alias="webhookSecret")
    allow_from: List[str] = Field(default_factory=list, alias="allowFrom")

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "ChannelConfig":
        """Build from a stored record, mapping the per-platform user id keys."""
        data = dict(data or {})
        for legacy in ("telegramUserId", "discordUserId"):
            if data.get(legacy) and not data.get("recipientId"):
                data["recipientId"] = str(data[legacy])
        return cls.model_validate(data)
