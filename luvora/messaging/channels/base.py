"""
Channel Base: Abstract lifecycle contract for messaging channel adapters.

Every platform adapter (Telegram, WhatsApp, Discord) implements this
interface so the registry can start, stop, query and send through any of
them uniformly.

Design Principles
-----------------
* Platform-specific logic lives **only** inside the adapter subclass, in the
  ``_validate`` / ``_connect`` / ``_disconnect`` / ``_deliver`` hooks.
* The base class owns the state machine, error conversion and event
  publication; subclasses never set ``state`` directly except through
  ``_set_state`` / ``_fail`` / ``_mark_linked``.
* Adapters never retry. Retry policy belongs to the registry's callers and
  to the delivery dispatcher's callers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from luvora.config import Settings
from luvora.messaging.errors import (
    ConnectionFailed,
    MessagingError,
    NotReady,
    SendFailed,
)
from luvora.messaging.events import ChannelEvent, ChannelEventBus, EventKind
from luvora.messaging.types import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    ChannelConfig,
    ChannelIdentity,
    ChannelState,
    Platform,
)

logger = logging.getLogger(__name__)


def split_message(text: str, max_len: int) -> List[str]:
    """Split text into chunks that fit a platform's message limit."""
    if len(text) <= max_len:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_len:
            chunks.append(text)
            break

        # Try to split at newline
        split_at = text.rfind("\n", 0, max_len)
        if split_at <= 0:
            split_at = max_len

        chunks.append(text[:split_at])
        text = text[split_at:].lstrip("\n")

    return chunks


class InvalidTransition(RuntimeError):
    """Programming error: the adapter tried an illegal state change."""


class BaseChannel(ABC):
    """
    Abstract base for a messaging channel adapter.

    Subclasses must implement:
    * ``_validate()``: Prove the config against the platform API.
    * ``_connect()``: Open the transport; return True if already linked.
    * ``_disconnect()``: Release the transport. Must be idempotent.
    * ``_deliver()``: Push one message over the open transport.
    * ``is_linked()`` / ``has_session()``: capability queries.
    """

    platform: Platform
    max_message_length: int = 4096

    def __init__(
        self,
        identity: ChannelIdentity,
        config: ChannelConfig,
        events: ChannelEventBus,
        settings: Settings,
    ):
        if identity.platform is not self.platform:
            raise ValueError(f"{self.__class__.__name__} cannot serve {identity.platform.value}")
        self.identity = identity
        self.config = config
        self.settings = settings
        self._events = events

        self.state = ChannelState.IDLE
        self.linked = False
        self.recipient_id: Optional[str] = config.recipient_id
        self.started_at: Optional[float] = None
        self.last_activity_at: Optional[float] = None
        self.last_error: Optional[MessagingError] = None
        self.error_since: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Validate the config and open the transport. Returns ``linked``.

        Calling start on a handle that is already starting, linking or
        connected is a no-op.
        """
        if self.state in (ChannelState.STARTING, ChannelState.LINKING, ChannelState.CONNECTED):
            return self.linked
        if self.state in TERMINAL_STATES:
            raise InvalidTransition(f"{self.identity} is {self.state.value}; build a new handle")

        self._set_state(ChannelState.STARTING)
        self.started_at = time.time()
        self.last_error = None
        self.error_since = None

        try:
            await self._validate()
            linked = await self._connect()
        except MessagingError as exc:
            await self._abort_start(exc)
            raise
        except asyncio.CancelledError:
            await self._abort_start(ConnectionFailed("start cancelled", self.platform))
            raise
        except Exception as exc:
            logger.exception("[%s] Start failed for %s", self._tag, self.identity)
            error = ConnectionFailed(f"Failed to start: {exc}", self.platform)
            await self._abort_start(error)
            raise error from exc

        # A pairing hook may already have moved the handle on.
        if self.state is ChannelState.STARTING:
            if linked:
                self._mark_linked()
            else:
                self._set_state(ChannelState.LINKING)
        self.last_activity_at = time.time()
        logger.info("[%s] Started for user %s (state=%s)", self._tag, self.identity.user_id, self.state.value)
        return self.linked

    async def stop(self) -> None:
        """Tear down the transport. Safe to call in any state, never raises."""
        if self.state is ChannelState.STOPPED:
            return
        if self.state is ChannelState.IDLE:
            self._set_state(ChannelState.STOPPED)
            return
        if self.state is ChannelState.STOPPING:
            return

        self._set_state(ChannelState.STOPPING)
        self.linked = False
        try:
            await self._disconnect()
        except Exception:
            logger.warning("[%s] Error while disconnecting %s", self._tag, self.identity, exc_info=True)
        self._set_state(ChannelState.STOPPED)
        logger.info("[%s] Stopped for user %s", self._tag, self.identity.user_id)

    async def release_transport(self) -> None:
        """Close the transport of a handle that failed at runtime. The state stays ``error``."""
        if self.state is not ChannelState.ERROR:
            return
        try:
            await self._disconnect()
        except Exception:
            logger.warning("[%s] Error while releasing transport of %s", self._tag, self.identity, exc_info=True)
        logger.info("[%s] Transport released for errored channel of user %s", self._tag, self.identity.user_id)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    @abstractmethod
    def is_linked(self) -> bool:
        """True once platform-level identity is proven and the handle is connected."""

    @abstractmethod
    def has_session(self) -> bool:
        """True if persisted session material allows reconnecting without re-pairing."""

    @property
    def is_running(self) -> bool:
        return self.state is ChannelState.CONNECTED

    @property
    def pending_qr(self) -> Optional[str]:
        """The pairing code currently on offer, for handles that pair by QR."""
        return None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, target: Optional[str], body: str) -> None:
        """
        Send ``body`` to ``target`` (defaults to the linked recipient).

        Raises NotReady unless connected and linked; SendFailed on transport
        errors. Both outcomes are published for the metrics aggregator.
        """
        if self.state is not ChannelState.CONNECTED or not self.is_linked():
            error = NotReady(
                f"{self.platform.value} channel is {self.state.value}, not connected and linked",
                self.platform,
            )
            self._publish(EventKind.SEND_FAILED, category="not_ready", latency_ms=0.0, message=error.message)
            raise error

        t0 = time.monotonic()
        try:
            await self._deliver(target, body)
        except SendFailed as exc:
            self._record_send_failure(exc, t0)
            raise
        except Exception as exc:
            logger.warning("[%s] Send failed for %s: %s", self._tag, self.identity, exc)
            error = SendFailed(f"Failed to send message: {exc}", self.platform, self._categorize(exc))
            self._record_send_failure(error, t0)
            raise error from exc

        latency_ms = (time.monotonic() - t0) * 1000
        self.last_activity_at = time.time()
        self._publish(EventKind.SENT, latency_ms=latency_ms)

    # ------------------------------------------------------------------
    # Platform hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _validate(self) -> None:
        """Raise ConfigurationInvalid / ConnectionFailed if the config is unusable."""

    @abstractmethod
    async def _connect(self) -> bool:
        """Open the transport. Return True when identity is already proven."""

    @abstractmethod
    async def _disconnect(self) -> None:
        """Release every transport / session resource. Must be idempotent."""

    @abstractmethod
    async def _deliver(self, target: Optional[str], body: str) -> None:
        """Push one message to the platform."""

    def _categorize(self, exc: BaseException) -> str:
        """Map a transport exception to a metrics error category."""
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return "timeout"
        if isinstance(exc, (ConnectionError, OSError)):
            return "network"
        return type(exc).__name__

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def is_allowed(self, sender_id: str) -> bool:
        """
        Check a sender against ``allow_from``. Empty list allows everyone;
        composite ids like ``"123|username"`` match on any part.
        """
        allow_list = self.config.allow_from
        if not allow_list:
            return True

        sender = str(sender_id)
        if sender in allow_list:
            return True
        if "|" in sender:
            return any(part and part in allow_list for part in sender.split("|"))
        return False

    def link_recipient(self, recipient_id: str, username: Optional[str] = None) -> None:
        """Remember who to deliver to when ``send`` gets no explicit target."""
        self.recipient_id = str(recipient_id)
        self.last_activity_at = time.time()
        self._publish(EventKind.RECIPIENT_LINKED, recipient_id=self.recipient_id, username=username)
        logger.info("[%s] Linked recipient %s for user %s", self._tag, self.recipient_id, self.identity.user_id)

    def _set_state(self, new_state: ChannelState) -> None:
        old = self.state
        if old is new_state:
            return
        if new_state not in ALLOWED_TRANSITIONS[old]:
            raise InvalidTransition(f"{self.identity}: {old.value} -> {new_state.value}")
        self.state = new_state
        self._publish(EventKind.STATE, **{"from": old.value, "to": new_state.value})

    def _mark_linked(self, **details: Any) -> None:
        self.linked = True
        self._set_state(ChannelState.CONNECTED)
        self._publish(EventKind.READY, **details)

    def _fail(self, error: MessagingError) -> None:
        """Move to ``error`` and remember why."""
        self.last_error = error
        if self.state in (ChannelState.STOPPING, ChannelState.STOPPED):
            return
        self.error_since = time.time()
        self.linked = False
        if self.state is not ChannelState.ERROR:
            self._set_state(ChannelState.ERROR)
        self._publish(EventKind.ERROR, message=error.message, code=error.code)
        logger.error("[%s] %s entered error state: %s", self._tag, self.identity, error.message)

    async def _abort_start(self, error: MessagingError) -> None:
        self._fail(error)
        try:
            await self._disconnect()
        except Exception:
            logger.warning("[%s] Cleanup after failed start raised", self._tag, exc_info=True)

    def _record_send_failure(self, error: SendFailed, t0: float) -> None:
        latency_ms = (time.monotonic() - t0) * 1000
        self._publish(
            EventKind.SEND_FAILED,
            category=error.category,
            latency_ms=latency_ms,
            message=error.message,
        )

    def _publish(self, kind: EventKind, **payload: Any) -> None:
        self._events.publish(ChannelEvent(kind=kind, identity=self.identity, payload=payload))

    @property
    def _tag(self) -> str:
        return self.platform.value.upper()

    def to_dict(self) -> Dict[str, Any]:
        """Status snapshot for status / debug endpoints."""
        return {
            "user_id": self.identity.user_id,
            "platform": self.platform.value,
            "state": self.state.value,
            "linked": self.is_linked(),
            "has_session": self.has_session(),
            "recipient_id": self.recipient_id,
            "started_at": self.started_at,
            "last_activity_at": self.last_activity_at,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.identity} state={self.state.value}>"
