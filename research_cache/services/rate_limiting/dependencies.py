"""
Rate Limit Dependency

Per-route rate limiting as a FastAPI dependency, for handlers that need a
limit different from the middleware rules.
"""

from typing import Any, Callable, Optional

from fastapi import Request, Response

from ...domain.cache.exceptions import RateLimitExceededException
from .identifiers import by_client_ip, resolve_identifier
from .middleware import rate_limit_headers
from .rate_limiter import DEFAULT_MESSAGE, RateLimitConfig, RateLimitResult


class RateLimit:
    """
    Dependency that counts the request and raises when it is over the limit.

    Usage::

        @router.post("/search", dependencies=[Depends(RateLimit(limit=10, window_ms=60000))])
    """

    def __init__(
        self,
        limit: int,
        window_ms: int,
        identifier_fn: Callable[[Request], Any] = by_client_ip,
        message: str = DEFAULT_MESSAGE,
        headers_enabled: bool = True,
        scope: Optional[str] = None,
    ):
        self.config = RateLimitConfig(
            limit=limit,
            window_ms=window_ms,
            identifier_fn=identifier_fn,
            message=message,
            headers_enabled=headers_enabled,
        )
        self.scope = scope

    async def __call__(self, request: Request, response: Response) -> Optional[RateLimitResult]:
        limiter = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            return None

        scope = self.scope or f"{request.method}:{request.url.path}"
        identifier = await resolve_identifier(self.config.identifier_fn, request)
        result = await limiter.check(
            f"{scope}:{identifier}", self.config.limit, self.config.window_ms
        )
        if not result.allowed:
            raise RateLimitExceededException(result, message=self.config.message)

        if self.config.headers_enabled:
            response.headers.update(rate_limit_headers(result))
        return result
