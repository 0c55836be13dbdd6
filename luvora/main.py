"""
Luvora Messaging - Main Application Entry Point
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from luvora import __version__
from luvora.api import channels_router, health_router
from luvora.config import get_settings
from luvora.messaging.service import MessagingService
from luvora.messaging.store import PocketBaseConfigStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("%s starting up...", settings.app_name)

    service = MessagingService(settings)
    store = None
    if settings.pocketbase_url:
        store = PocketBaseConfigStore.from_settings(settings)
    else:
        logger.warning("POCKETBASE_URL not set, starting with no stored channels")

    # Health reports unhealthy until initialization succeeds
    init_task = asyncio.create_task(service.initialize_with_retry(store))
    app.state.messaging = service

    yield

    logger.info("%s shutting down...", settings.app_name)
    if not init_task.done():
        init_task.cancel()
        try:
            await init_task
        except asyncio.CancelledError:
            pass
    await service.shutdown()
    if store is not None:
        await store.aclose()


app = FastAPI(
    title=get_settings().app_name,
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health_router, prefix=get_settings().api_prefix)
app.include_router(channels_router, prefix=get_settings().api_prefix)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {"name": get_settings().app_name, "version": __version__}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("luvora.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)
