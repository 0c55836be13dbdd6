"""
Channel Events: typed lifecycle / outcome events published by adapters.

Two ways to consume:

* ``bus.add_listener(fn)``: synchronous callback for every event (metrics,
  registry slot bookkeeping).
* ``bus.subscribe(identity)``: an async-iterable queue scoped to one
  identity, used by a streaming setup flow for the length of one session.

Usage:
    sub = bus.subscribe(identity)
    async for event in sub:
        if event.kind is EventKind.QR:
            ...
    sub.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from luvora.messaging.types import ChannelIdentity

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    STATE = "state"                         # payload: {"from": ..., "to": ...}
    QR = "qr"                               # payload: {"qr": ...}
    READY = "ready"                         # payload: {"phone_number"/"bot_username": ...}
    ERROR = "error"                         # payload: {"message", "code"}
    RECIPIENT_LINKED = "recipient_linked"   # payload: {"recipient_id", "username"}
    SENT = "sent"                           # payload: {"latency_ms"}
    SEND_FAILED = "send_failed"             # payload: {"category", "latency_ms", "message"}
    TIMEOUT = "timeout"                     # emitted by the setup flow, not adapters


@dataclass
class ChannelEvent:
    kind: EventKind
    identity: ChannelIdentity
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "user_id": self.identity.user_id,
            "platform": self.identity.platform.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """Render as a Server-Sent Events frame."""
        return f"event: {self.kind.value}\ndata: {json.dumps(self.payload)}\n\n"


EventListener = Callable[[ChannelEvent], None]


class Subscription:
    """Queue of events for one identity. Async-iterable until closed."""

    def __init__(self, bus: "ChannelEventBus", identity: Optional[ChannelIdentity]):
        self._bus = bus
        self.identity = identity
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, event: ChannelEvent) -> bool:
        return self.identity is None or event.identity == self.identity

    def put(self, event: ChannelEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> ChannelEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._remove_subscription(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChannelEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class ChannelEventBus:
    """In-process publish/subscribe for channel events."""

    def __init__(self):
        self._listeners: List[EventListener] = []
        self._subscriptions: List[Subscription] = []

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self, identity: Optional[ChannelIdentity] = None) -> Subscription:
        sub = Subscription(self, identity)
        self._subscriptions.append(sub)
        return sub

    def _remove_subscription(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def publish(self, event: ChannelEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("[EVENTS] Listener failed on %s for %s", event.kind.value, event.identity)
        for sub in list(self._subscriptions):
            if sub.matches(event):
                sub.put(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
