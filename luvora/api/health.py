"""
Messaging Health API Router.

Status codes follow the health classification:
healthy → 200, degraded → 207, unhealthy → 503.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from luvora.api.deps import get_messaging_service
from luvora.messaging.health import HealthStatus
from luvora.messaging.service import MessagingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health Checks"])

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/messaging")
async def messaging_health(service: MessagingService = Depends(get_messaging_service)):
    """Pool utilization, per-platform channel counts and open issues."""
    try:
        report = service.health.get_health_status()
    except Exception as e:
        logger.exception("[HEALTH] Health check failed")
        return JSONResponse(
            status_code=HealthStatus.UNHEALTHY.http_status,
            content={"status": HealthStatus.UNHEALTHY.value, "timestamp": _now(), "error": str(e)},
            headers=NO_CACHE_HEADERS,
        )

    status = report.status
    return JSONResponse(
        status_code=status.http_status,
        content={"status": status.value, "timestamp": _now(), "messaging": report.to_dict()},
        headers=NO_CACHE_HEADERS,
    )


@router.get("/messaging/metrics")
async def messaging_metrics(service: MessagingService = Depends(get_messaging_service)):
    """Per-platform send counters, latency and top error categories."""
    return JSONResponse(
        content={"timestamp": _now(), **service.get_metrics()},
        headers=NO_CACHE_HEADERS,
    )
