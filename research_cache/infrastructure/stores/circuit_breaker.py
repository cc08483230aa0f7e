"""
Backing Store Circuit Breaker

Implements the circuit breaker pattern for remote store operations so a
dead Redis is not hammered by every request while it is down.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import StoreCircuitOpenException

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    # Failure threshold - number of consecutive failures before opening
    failure_threshold: int = 5

    # Recovery timeout - seconds to wait before trying again
    recovery_timeout: float = 30.0

    # Success threshold - successes in HALF_OPEN needed to close circuit
    success_threshold: int = 1

    # Monitor these exception types as failures
    failure_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
        OSError,
    )


@dataclass
class CircuitBreakerMetrics:
    """Metrics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    circuit_opens: int = 0
    last_failure_time: Optional[float] = None


class StoreCircuitBreaker:
    """
    Circuit breaker for backing store operations.

    Only exceptions listed in ``failure_exceptions`` count as failures; any
    other exception passes through without changing the circuit state.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        backend: str = "redis",
    ):
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.metrics = CircuitBreakerMetrics()
        self._clock = clock
        self._backend = backend
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute ``func`` with circuit breaker protection.

        Raises:
            StoreCircuitOpenException: If circuit is open
            Exception: Original exception from the call
        """
        async with self._lock:
            self.metrics.total_calls += 1
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    self.metrics.rejected_calls += 1
                    raise StoreCircuitOpenException(backend=self._backend)

        try:
            result = await func()
        except self.config.failure_exceptions:
            await self._record_failure()
            raise

        await self._record_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if self.opened_at is None:
            return True
        return self._clock() - self.opened_at >= self.config.recovery_timeout

    def _transition(self, state: CircuitState) -> None:
        previous = self.state
        self.state = state
        if state == CircuitState.OPEN:
            self.opened_at = self._clock()
            self.metrics.circuit_opens += 1
        if state != CircuitState.HALF_OPEN:
            self.success_count = 0
        logger.info(
            f"Store circuit breaker {previous.value} -> {state.value}",
            extra={"backend": self._backend, "failure_count": self.failure_count},
        )

    async def _record_success(self) -> None:
        async with self._lock:
            self.metrics.successful_calls += 1
            self.failure_count = 0
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)

    async def _record_failure(self) -> None:
        async with self._lock:
            self.metrics.failed_calls += 1
            self.metrics.last_failure_time = self._clock()
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN or (
                self.state == CircuitState.CLOSED
                and self.failure_count >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN)
                logger.warning(
                    "Store circuit breaker opened",
                    extra={
                        "backend": self._backend,
                        "failure_count": self.failure_count,
                        "threshold": self.config.failure_threshold,
                    },
                )

    def get_state(self) -> dict:
        """Snapshot for health endpoints."""
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "total_calls": self.metrics.total_calls,
            "failed_calls": self.metrics.failed_calls,
            "rejected_calls": self.metrics.rejected_calls,
            "circuit_opens": self.metrics.circuit_opens,
        }
