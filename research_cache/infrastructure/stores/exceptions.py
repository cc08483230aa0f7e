"""
Backing Store Exceptions

Exceptions raised by backing store implementations. Redis client errors are
translated into these so that callers never depend on redis-py types.
"""

from typing import Optional

from ...domain.cache.exceptions import CacheException


class StoreException(CacheException):
    """Base exception for backing store errors."""


class BackingStoreUnavailableException(StoreException):
    """Raised when the backing store cannot be reached.

    Recovered locally: the service falls back to an in-memory store at startup
    and bypasses the cache at runtime. Never surfaced to end callers.
    """

    def __init__(
        self,
        message: str = "Backing store unavailable",
        backend: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if backend:
            details["backend"] = backend
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            error_code="BACKING_STORE_UNAVAILABLE",
            details=details,
            original_error=original_error,
        )


class StoreCircuitOpenException(BackingStoreUnavailableException):
    """Raised when the store circuit breaker is open."""

    def __init__(self, backend: str = "redis"):
        super().__init__(
            message="Backing store circuit breaker is open - service unavailable",
            backend=backend,
        )
        self.error_code = "BACKING_STORE_CIRCUIT_OPEN"
