"""
Health check endpoints for the Research Cache API.

Reports service liveness and backing store reachability.
"""

from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends

from ...constants import APP_NAME, APP_VERSION
from ...core.config import get_settings
from ...services.cache.cache_service import CacheService
from ..dependencies import get_cache_service

logger = structlog.get_logger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(cache: CacheService = Depends(get_cache_service)) -> Dict[str, Any]:
    """
    Basic health check endpoint.

    A degraded backing store still answers 200: the cache falls back
    transparently, so the service itself stays usable.
    """
    cache_health = await cache.health_check()
    if cache_health["status"] != "healthy":
        logger.warning("Backing store unreachable", backend=cache_health["backend"])

    return {
        "status": cache_health["status"],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": APP_NAME,
        "version": APP_VERSION,
        "environment": get_settings().ENVIRONMENT,
        "cache": cache_health,
    }
