"""
Backing Store Factory

Selects the backing store once at startup. Redis is tried with bounded
retries; when it stays unreachable the service degrades to the in-memory
store with a warning instead of failing to start.
"""

import logging
import time
from typing import Callable

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...core.config import Settings
from ...domain.cache.repository_interfaces import BackingStore
from ...monitoring.cache_metrics import cache_metrics
from .exceptions import BackingStoreUnavailableException
from .memory_store import InMemoryStore
from .remote_store import RemoteStore

logger = logging.getLogger(__name__)


async def connect_remote_store(
    store: RemoteStore, attempts: int = 3, max_wait: float = 5.0
) -> RemoteStore:
    """Initialize a remote store, retrying transient connection failures."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=max_wait),
        retry=retry_if_exception_type(BackingStoreUnavailableException),
        before_sleep=lambda retry_state: logger.warning(
            "Redis connection retry",
            extra={
                "attempt": retry_state.attempt_number,
                "wait_time": retry_state.next_action.sleep,
            },
        ),
        reraise=True,
    ):
        with attempt:
            await store.initialize()
    return store


async def create_backing_store(
    settings: Settings, clock: Callable[[], float] = time.time
) -> BackingStore:
    """
    Build the backing store selected by configuration.

    Never raises for an unreachable Redis: the in-memory store is returned
    instead and the fallback is logged at warning level.
    """
    if not settings.REDIS_ENABLED:
        logger.info("Redis disabled, using in-memory backing store")
        return InMemoryStore(clock=clock)

    store = RemoteStore.from_url(
        settings.REDIS_URL,
        prefix=settings.CACHE_KEY_PREFIX,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        connection_timeout=settings.REDIS_CONNECTION_TIMEOUT,
        operation_timeout=settings.REDIS_OPERATION_TIMEOUT,
        failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
        clock=clock,
    )
    try:
        return await connect_remote_store(store, attempts=settings.REDIS_CONNECT_ATTEMPTS)
    except (BackingStoreUnavailableException, RetryError) as e:
        logger.warning(
            f"Redis unavailable, falling back to in-memory backing store: {e}",
            extra={"redis_url": _redact(settings.REDIS_URL)},
        )
        cache_metrics.backend_fallbacks_total.inc()
        try:
            await store.close()
        except OSError as close_error:
            logger.debug(f"Error closing unused Redis client: {close_error}")
        return InMemoryStore(clock=clock)


def _redact(url: str) -> str:
    """Strip credentials from a Redis URL for logging."""
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
