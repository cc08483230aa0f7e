"""
API Dependencies

Accessors for the services the application lifespan stores on ``app.state``.
"""

from fastapi import Request

from ..services.cache.admin import CacheAdminService
from ..services.cache.cache_service import CacheService


def get_cache_service(request: Request) -> CacheService:
    return request.app.state.cache_service


def get_cache_admin(request: Request) -> CacheAdminService:
    return request.app.state.cache_admin
