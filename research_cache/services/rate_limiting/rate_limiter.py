"""
Rate Limiter Service

Fixed-window request counting per identifier. The count is incremented and
read in one atomic backing store operation, so multiple service instances
sharing Redis never race on read-then-write. When the store is unreachable
the limiter fails open.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, Field

from ...constants import current_time_ms
from ...domain.cache.exceptions import (
    InvalidConfigurationException,
    RateLimitExceededException,
)
from ...domain.cache.repository_interfaces import BackingStore
from ...infrastructure.stores.exceptions import StoreException
from ...monitoring.cache_metrics import cache_metrics
from .identifiers import by_client_ip

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_MESSAGE = "Too many requests, please try again later."


class RateLimitResult(BaseModel):
    """Result of rate limit check."""

    allowed: bool = Field(..., description="Whether request is allowed")
    remaining: int = Field(..., description="Requests left in the window")
    reset_at: int = Field(..., description="Epoch ms at which the window resets")
    count: int = Field(..., description="Requests counted in the window")
    limit: int = Field(..., description="Rate limit threshold")
    window_ms: int = Field(..., description="Window length in milliseconds")
    identifier: str = Field(..., description="Rate limit identifier")
    retry_after: Optional[int] = Field(None, description="Retry-After header value")

    @property
    def reset_seconds(self) -> int:
        """Epoch seconds at which the window resets."""
        return math.ceil(self.reset_at / 1000)


@dataclass
class RateLimitConfig:
    """
    Rate limit configuration.

    ``identifier_fn`` maps a request to a stable string; it may be a plain
    function or a coroutine function.
    """

    limit: int = 100
    window_ms: int = 15 * 60 * 1000
    identifier_fn: Callable[[Any], Any] = by_client_ip
    message: str = DEFAULT_MESSAGE
    headers_enabled: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.limit, int) or self.limit <= 0:
            raise InvalidConfigurationException(
                "Rate limit must be a positive integer", option="limit", value=self.limit
            )
        if not isinstance(self.window_ms, int) or self.window_ms <= 0:
            raise InvalidConfigurationException(
                "Rate limit window must be a positive number of milliseconds",
                option="window_ms",
                value=self.window_ms,
            )
        if not callable(self.identifier_fn):
            raise InvalidConfigurationException(
                "identifier_fn must be callable", option="identifier_fn"
            )


def _validate(limit: int, window_ms: int) -> None:
    if limit <= 0:
        raise InvalidConfigurationException(
            "Rate limit must be positive", option="limit", value=limit
        )
    if window_ms <= 0:
        raise InvalidConfigurationException(
            "Rate limit window must be positive", option="window_ms", value=window_ms
        )


class RateLimiter:
    """
    Fixed window rate limiter.

    A window starts with the first request for an identifier and lasts
    ``window_ms``. Every check counts, rejected ones included.
    """

    def __init__(self, store: BackingStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def _result(
        self, identifier: str, limit: int, window_ms: int, count: int, ttl_ms: int
    ) -> RateLimitResult:
        now = current_time_ms(self._clock)
        allowed = count <= limit
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=now + max(0, ttl_ms),
            count=count,
            limit=limit,
            window_ms=window_ms,
            identifier=identifier,
            retry_after=None if allowed else max(1, math.ceil(ttl_ms / 1000)),
        )

    async def check(self, identifier: str, limit: int, window_ms: int) -> RateLimitResult:
        """
        Count one request for ``identifier`` and decide whether it may proceed.

        Raises:
            InvalidConfigurationException: If limit or window is not positive
        """
        _validate(limit, window_ms)

        with tracer.start_as_current_span("rate_limiter.check") as span:
            span.set_attribute("rate_limit.identifier", identifier)
            span.set_attribute("rate_limit.limit", limit)
            span.set_attribute("rate_limit.window_ms", window_ms)

            try:
                count, ttl_ms = await self.store.increment_window(identifier, window_ms)
            except StoreException as e:
                # Fail open - allow request when the store is unreachable
                logger.warning(f"Rate limit check bypassed for {identifier}: {e}")
                span.set_status(Status(StatusCode.ERROR, str(e)))
                cache_metrics.rate_limit_decisions_total.labels(decision="bypassed").inc()
                return self._result(identifier, limit, window_ms, 0, window_ms)

            result = self._result(identifier, limit, window_ms, count, ttl_ms)
            span.set_attribute("rate_limit.count", count)
            span.set_attribute("rate_limit.allowed", result.allowed)
            cache_metrics.rate_limit_decisions_total.labels(
                decision="allowed" if result.allowed else "rejected"
            ).inc()

            if not result.allowed:
                logger.info(
                    f"Rate limit exceeded for {identifier}",
                    extra={"count": count, "limit": limit, "window_ms": window_ms},
                )
            return result

    async def enforce(
        self,
        identifier: str,
        limit: int,
        window_ms: int,
        message: Optional[str] = None,
    ) -> RateLimitResult:
        """
        Count a request and raise when it is over the limit.

        Raises:
            RateLimitExceededException: If the window is used up
        """
        result = await self.check(identifier, limit, window_ms)
        if not result.allowed:
            raise RateLimitExceededException(result, message=message)
        return result

    async def status(self, identifier: str, limit: int, window_ms: int) -> RateLimitResult:
        """Current window state without counting a request."""
        _validate(limit, window_ms)
        try:
            window = await self.store.window_status(identifier)
        except StoreException as e:
            logger.warning(f"Rate limit status unavailable for {identifier}: {e}")
            window = None
        if window is None:
            return self._result(identifier, limit, window_ms, 0, window_ms)
        count, ttl_ms = window
        result = self._result(identifier, limit, window_ms, count, ttl_ms)
        # Status reports whether the next request would pass
        result.allowed = count < limit
        return result

    async def reset(self, identifier: str) -> bool:
        """Drop the window for ``identifier``."""
        try:
            removed = await self.store.reset_window(identifier)
        except StoreException as e:
            logger.error(f"Failed to reset rate limit for {identifier}: {e}")
            return False
        if removed:
            logger.info(f"Rate limit reset for {identifier}")
        return removed
