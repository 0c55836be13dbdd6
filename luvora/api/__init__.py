from luvora.api.channels import router as channels_router
from luvora.api.deps import get_messaging_service
from luvora.api.health import router as health_router

__all__ = [
    "channels_router",
    "health_router",
    "get_messaging_service",
]
