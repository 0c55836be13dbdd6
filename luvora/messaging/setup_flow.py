"""
Pairing flow for a streaming setup endpoint (Server-Sent Events).

Flow:
1. Start the user's channel through the registry
2. Yield each ``qr`` event as WhatsApp issues it
3. Yield ``ready`` once linked (or ``error`` / ``timeout``)
4. Stop the channel, whatever happened

The session material stays on disk, so the service can restart the channel
later without another QR scan.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, AsyncIterator, Optional

from luvora.messaging.events import ChannelEvent, EventKind
from luvora.messaging.types import ChannelConfig, ChannelIdentity

if TYPE_CHECKING:
    from luvora.messaging.service import MessagingService

logger = logging.getLogger(__name__)

TERMINAL_KINDS = (EventKind.READY, EventKind.ERROR)


async def pairing_session(
    service: "MessagingService",
    identity: ChannelIdentity,
    config: ChannelConfig,
    timeout: Optional[float] = None,
) -> AsyncIterator[ChannelEvent]:
    if timeout is None:
        timeout = service.settings.whatsapp_pairing_timeout_seconds

    sub = service.events.subscribe(identity)
    try:
        result = await service.registry.start_channel(identity, config)
        if not result.ok:
            yield ChannelEvent(EventKind.ERROR, identity, result.error.to_dict())
            return
        if result.linked:
            yield ChannelEvent(EventKind.READY, identity, {"already_linked": True})
            return
        if result.reused and result.channel.pending_qr:
            # Published before this subscription existed
            yield ChannelEvent(EventKind.QR, identity, {"qr": result.channel.pending_qr})

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                event = await sub.get(timeout=remaining)
            except asyncio.TimeoutError:
                break
            if event.kind is EventKind.QR or event.kind in TERMINAL_KINDS:
                yield event
            if event.kind in TERMINAL_KINDS:
                return

        logger.warning("[SETUP] Pairing timed out for %s after %.0fs", identity, timeout)
        yield ChannelEvent(EventKind.TIMEOUT, identity, {"timeout_seconds": timeout})
    finally:
        sub.close()
        await service.registry.stop_channel(identity)
