from luvora.messaging.dispatcher import DeliveryDispatcher, DeliveryResult, DeliveryTarget
from luvora.messaging.errors import (
    CapacityExceeded,
    ConfigurationInvalid,
    ConnectionFailed,
    MessagingError,
    NotReady,
    SendFailed,
)
from luvora.messaging.events import ChannelEvent, ChannelEventBus, EventKind
from luvora.messaging.health import HealthStatus, MessagingHealth
from luvora.messaging.metrics import MessagingMetrics
from luvora.messaging.pool import ConnectionPool
from luvora.messaging.registry import ChannelRegistry, ChannelResult
from luvora.messaging.service import MessagingService
from luvora.messaging.types import ChannelConfig, ChannelIdentity, ChannelState, Platform

__all__ = [
    "CapacityExceeded",
    "ChannelConfig",
    "ChannelEvent",
    "ChannelEventBus",
    "ChannelIdentity",
    "ChannelRegistry",
    "ChannelResult",
    "ChannelState",
    "ConfigurationInvalid",
    "ConnectionFailed",
    "ConnectionPool",
    "DeliveryDispatcher",
    "DeliveryResult",
    "DeliveryTarget",
    "EventKind",
    "HealthStatus",
    "MessagingError",
    "MessagingHealth",
    "MessagingMetrics",
    "MessagingService",
    "NotReady",
    "Platform",
    "SendFailed",
]
