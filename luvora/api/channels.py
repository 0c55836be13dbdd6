"""
Messaging Channels API Router.

Admin surface over the registry: channel listing, a retry for a failed boot,
per-user reloads from the config store and the streaming pairing endpoint.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from luvora.api.deps import get_messaging_service
from luvora.messaging.service import MessagingService
from luvora.messaging.setup_flow import pairing_session
from luvora.messaging.types import ChannelConfig, ChannelIdentity, Platform

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messaging", tags=["Messaging"])


@router.get("/channels")
async def list_channels(service: MessagingService = Depends(get_messaging_service)):
    """Status of every channel the registry currently holds."""
    channels = service.registry.status()
    return {"channels": channels, "total": len(channels)}


@router.post("/initialize")
async def initialize_messaging(service: MessagingService = Depends(get_messaging_service)):
    """Start stored channels again after a failed boot (e.g. the config store was down)."""
    if service.initialized:
        return {"initialized": True, "started": False}
    try:
        await service.initialize()
    except Exception as e:
        logger.error("Messaging initialization failed: %s", e)
        raise HTTPException(status_code=503, detail=f"Initialization failed: {e}")
    return {"initialized": True, "started": True}


@router.post("/users/{user_id}/reload")
async def reload_user(user_id: str, service: MessagingService = Depends(get_messaging_service)):
    """Restart a user's channels from freshly stored config."""
    if service.store is None:
        raise HTTPException(status_code=409, detail="No channel config store configured")
    results = await service.registry.reload_user_channels(user_id, service.store)
    return {"user_id": user_id, "results": [r.to_dict() for r in results]}


@router.get("/{platform}/setup")
async def setup_channel(
    platform: Platform,
    user_id: str = Query(...),
    service: MessagingService = Depends(get_messaging_service),
):
    """
    Stream pairing progress as Server-Sent Events.

    Events: ``qr`` (scan this), ``ready``, ``error``, ``timeout``.
    """
    identity = ChannelIdentity(user_id, platform)
    config = None
    if service.store is not None:
        config = await service.store.find_config(user_id, platform)
    if config is None:
        config = ChannelConfig()

    async def generate():
        async for event in pairing_session(service, identity, config):
            yield event.to_sse()

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
