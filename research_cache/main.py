"""
Research Cache - Main FastAPI Application

Application factory wiring the cache service, rate limiting middleware,
operator endpoints and Prometheus metrics:
- Backing store selected once at startup (Redis, or in-memory fallback)
- Fixed-window rate limiting with X-RateLimit-* headers and HTTP 429
- Cache administration endpoints for operator tooling
"""

from contextlib import asynccontextmanager
from typing import Dict, Iterable, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from .api.endpoints.cache_admin import router as cache_admin_router
from .api.endpoints.health import router as health_router
from .constants import APP_NAME, APP_VERSION
from .core.config import Settings, get_settings
from .core.logging import configure_logging
from .domain.cache.exceptions import (
    FetchFailedException,
    InvalidConfigurationException,
    RateLimitExceededException,
)
from .monitoring.cache_metrics import cache_metrics
from .services.cache.admin import CacheAdminService, WarmupProvider
from .services.cache.cache_service import CacheService
from .services.rate_limiting.identifiers import by_principal_or_ip
from .services.rate_limiting.middleware import (
    RateLimitingMiddleware,
    RateLimitRule,
    rate_limit_response,
)
from .services.rate_limiting.rate_limiter import RateLimitConfig

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    cache_service: Optional[CacheService] = None,
    warmup_providers: Optional[Dict[str, WarmupProvider]] = None,
    rate_limit_rules: Optional[Iterable[RateLimitRule]] = None,
) -> FastAPI:
    """
    Build the application.

    ``cache_service`` replaces the configuration-selected service; it is
    still initialized and closed by the application lifespan.
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create the cache service on startup and flush it on shutdown."""
        service = cache_service or await CacheService.from_settings(settings)
        await service.init()

        admin = CacheAdminService(service)
        for category, provider in (warmup_providers or {}).items():
            admin.register_warmup(category, provider)

        app.state.cache_service = service
        app.state.cache_admin = admin
        app.state.rate_limiter = service.rate_limiter
        logger.info(
            "Research cache started",
            backend=service.backend,
            environment=settings.ENVIRONMENT,
        )

        try:
            yield
        finally:
            await service.flush_and_close()
            logger.info("Research cache stopped")

    app = FastAPI(
        title=APP_NAME,
        version=APP_VERSION,
        lifespan=lifespan,
    )

    # Rate limiting is validated here, before any request is served
    default_config = RateLimitConfig(
        limit=settings.RATE_LIMIT_DEFAULT_LIMIT,
        window_ms=settings.RATE_LIMIT_DEFAULT_WINDOW_MS,
        identifier_fn=by_principal_or_ip,
        message=settings.RATE_LIMIT_MESSAGE,
        headers_enabled=settings.RATE_LIMIT_HEADERS_ENABLED,
    )
    app.add_middleware(
        RateLimitingMiddleware,
        default_config=default_config,
        rules=list(rate_limit_rules or []),
        exclude_paths=settings.rate_limit_exclude_paths_list,
        enabled=settings.RATE_LIMIT_ENABLED,
    )

    app.include_router(health_router)
    app.include_router(cache_admin_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(cache_metrics.export(), media_type=CONTENT_TYPE_LATEST)

    @app.exception_handler(RateLimitExceededException)
    async def rate_limit_exception_handler(request: Request, exc: RateLimitExceededException):
        return rate_limit_response(
            exc.result, exc.message, headers_enabled=settings.RATE_LIMIT_HEADERS_ENABLED
        )

    @app.exception_handler(FetchFailedException)
    async def fetch_failed_exception_handler(request: Request, exc: FetchFailedException):
        logger.error(
            "Data source fetch failed",
            key=exc.key,
            error_code=exc.error_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": "Service Unavailable",
                "message": "The requested data is temporarily unavailable.",
                "statusCode": status.HTTP_503_SERVICE_UNAVAILABLE,
            },
        )

    @app.exception_handler(InvalidConfigurationException)
    async def invalid_configuration_exception_handler(
        request: Request, exc: InvalidConfigurationException
    ):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Bad Request",
                "message": exc.message,
                "statusCode": status.HTTP_400_BAD_REQUEST,
            },
        )

    return app


app = create_app()
