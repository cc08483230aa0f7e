"""
Cache administration endpoints.

Operator tooling for statistics, clearing, tag invalidation, LRU purge and
warmup. Each endpoint reports a success flag or a stats object; errors are
returned in the body instead of surfacing as 500s.
"""

from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...domain.cache.value_objects import CacheStats
from ...services.cache.admin import CacheAdminService
from ..dependencies import get_cache_admin

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/admin/cache", tags=["cache-admin"])


class OperationResult(BaseModel):
    """Outcome of an administrative operation."""

    success: bool = Field(..., description="Whether the operation succeeded")


class InvalidateTagsRequest(BaseModel):
    tags: List[str] = Field(..., min_length=1, description="Tags to invalidate")


class PurgeLruRequest(BaseModel):
    target_entries: Optional[int] = Field(None, ge=0, description="Entry count to keep")
    target_bytes: Optional[int] = Field(None, ge=0, description="Byte budget to keep")
    fraction: Optional[float] = Field(
        None, gt=0, le=1, description="Share of entries to evict when no target is given"
    )


@router.get("/stats", response_model=CacheStats)
async def get_cache_stats(admin: CacheAdminService = Depends(get_cache_admin)) -> CacheStats:
    return await admin.get_stats()


@router.post("/clear", response_model=OperationResult)
async def clear_cache(admin: CacheAdminService = Depends(get_cache_admin)) -> OperationResult:
    success = await admin.clear_all()
    logger.info("Cache clear requested", success=success)
    return OperationResult(success=success)


@router.post("/invalidate", response_model=OperationResult)
async def invalidate_cache_tags(
    request: InvalidateTagsRequest,
    admin: CacheAdminService = Depends(get_cache_admin),
) -> OperationResult:
    success = await admin.invalidate_by_tags(request.tags)
    logger.info("Cache tag invalidation requested", tags=request.tags, success=success)
    return OperationResult(success=success)


@router.post("/purge-lru", response_model=OperationResult)
async def purge_lru_entries(
    request: Optional[PurgeLruRequest] = None,
    admin: CacheAdminService = Depends(get_cache_admin),
) -> OperationResult:
    request = request or PurgeLruRequest()
    success = await admin.purge_lru(
        target_entries=request.target_entries,
        target_bytes=request.target_bytes,
        fraction=request.fraction,
    )
    logger.info("LRU purge requested", success=success)
    return OperationResult(success=success)


@router.post("/warmup/{category}", response_model=OperationResult)
async def warmup_cache(
    category: str,
    skip_existing: bool = False,
    admin: CacheAdminService = Depends(get_cache_admin),
) -> OperationResult:
    success = await admin.warmup_category(category, skip_existing=skip_existing)
    logger.info("Cache warmup requested", category=category, success=success)
    return OperationResult(success=success)
