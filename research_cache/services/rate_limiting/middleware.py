"""
Rate Limiting Middleware

FastAPI middleware for automatic rate limiting.
Provides HTTP 429 responses with retry-after headers.
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence

from fastapi import Request, Response, status
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .identifiers import by_client_ip, resolve_identifier
from .rate_limiter import RateLimitConfig, RateLimiter, RateLimitResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_EXCLUDED_PATHS = ("/health", "/metrics", "/docs", "/openapi.json")


@dataclass
class RateLimitRule:
    """
    Rate limit applied to requests whose path matches ``pattern``.

    ``pattern`` is a glob over the URL path; ``methods`` restricts the rule to
    the given HTTP methods (all methods when empty). ``scope`` namespaces the
    window so that two rules never share a counter.
    """

    pattern: str
    config: RateLimitConfig
    methods: Sequence[str] = field(default_factory=tuple)
    scope: Optional[str] = None

    def __post_init__(self) -> None:
        self.methods = tuple(method.upper() for method in self.methods)
        if self.scope is None:
            self.scope = self.pattern

    def matches(self, method: str, path: str) -> bool:
        if self.methods and method.upper() not in self.methods:
            return False
        return fnmatch.fnmatchcase(path, self.pattern)


def rate_limit_headers(result: RateLimitResult) -> dict:
    """X-RateLimit-* headers for a limiter decision. Reset is epoch seconds."""
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_seconds),
    }


def rate_limit_response(
    result: RateLimitResult,
    message: str,
    headers_enabled: bool = True,
) -> JSONResponse:
    """Create HTTP 429 Too Many Requests response."""
    headers = rate_limit_headers(result) if headers_enabled else {}
    headers["Retry-After"] = str(result.retry_after or 1)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "Too Many Requests",
            "message": message,
            "statusCode": status.HTTP_429_TOO_MANY_REQUESTS,
        },
        headers=headers,
    )


class RateLimitingMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for automatic rate limiting.

    The first matching rule wins; requests matching no rule fall under the
    default config. Rejected requests never reach the route handler.
    """

    def __init__(
        self,
        app,
        default_config: Optional[RateLimitConfig] = None,
        rules: Optional[Iterable[RateLimitRule]] = None,
        exclude_paths: Optional[List[str]] = None,
        enabled: bool = True,
        limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize rate limiting middleware.

        Args:
            app: ASGI application
            default_config: Limit for requests that match no rule (None skips them)
            rules: Path and method specific limits, checked in order
            exclude_paths: Paths never rate limited
            enabled: Whether rate limiting is enabled
            limiter: Limiter to use; defaults to ``app.state.rate_limiter``
        """
        super().__init__(app)
        self.default_config = default_config
        self.rules = list(rules or [])
        self.exclude_paths = set(
            DEFAULT_EXCLUDED_PATHS if exclude_paths is None else exclude_paths
        )
        self.enabled = enabled
        self._limiter = limiter

    def _select(self, request: Request):
        for rule in self.rules:
            if rule.matches(request.method, request.url.path):
                return rule.config, rule.scope
        if self.default_config is not None:
            return self.default_config, "global"
        return None, None

    def _get_limiter(self, request: Request) -> Optional[RateLimiter]:
        return self._limiter or getattr(request.app.state, "rate_limiter", None)

    async def _identify(self, config: RateLimitConfig, request: Request) -> str:
        try:
            return await resolve_identifier(config.identifier_fn, request)
        except Exception as e:
            logger.warning(f"Failed to extract rate limit identifier from request: {e}")
            return by_client_ip(request)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Check the request against its rule and annotate the response."""
        if not self.enabled or request.url.path in self.exclude_paths:
            return await call_next(request)

        config, scope = self._select(request)
        limiter = self._get_limiter(request)
        if config is None or limiter is None:
            return await call_next(request)

        with tracer.start_as_current_span("rate_limiting_middleware.dispatch") as span:
            span.set_attribute("http.method", request.method)
            span.set_attribute("http.path", request.url.path)
            span.set_attribute("rate_limit.scope", scope)

            identifier = await self._identify(config, request)
            result = await limiter.check(
                f"{scope}:{identifier}", config.limit, config.window_ms
            )
            span.set_attribute("rate_limit.allowed", result.allowed)
            span.set_attribute("rate_limit.remaining", result.remaining)

            if not result.allowed:
                span.set_attribute("http.status_code", status.HTTP_429_TOO_MANY_REQUESTS)
                return rate_limit_response(result, config.message, config.headers_enabled)

        response = await call_next(request)
        if config.headers_enabled:
            response.headers.update(rate_limit_headers(result))
        return response

