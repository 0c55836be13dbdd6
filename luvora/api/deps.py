from fastapi import HTTPException, Request

from luvora.messaging.service import MessagingService


def get_messaging_service(request: Request) -> MessagingService:
    """The service the lifespan stored on ``app.state``."""
    service = getattr(request.app.state, "messaging", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Messaging service not started")
    return service
