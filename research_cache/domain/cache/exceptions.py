"""
Cache Domain Exceptions

Error taxonomy for cache and rate-limit operations. Every error carries a
machine-readable code and a details mapping so the HTTP layer can render it
without inspecting the exception type.
"""

from typing import Any, Dict, Optional


class CacheException(Exception):
    """Base exception for cache and rate-limit errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        if original_error is not None:
            self.details.setdefault("original_error", str(original_error))
            self.details.setdefault(
                "original_error_type", type(original_error).__name__
            )
        super().__init__(self.message)
        # Preserve exception context for debugging (exception chaining)
        if original_error is not None:
            self.__cause__ = original_error


class InvalidConfigurationException(CacheException):
    """Raised at setup time when a cache or rate-limit option is invalid."""

    def __init__(self, message: str, option: Optional[str] = None, value: Any = None):
        details: Dict[str, Any] = {}
        if option:
            details["option"] = option
        if value is not None:
            details["value"] = str(value)

        super().__init__(
            message=message, error_code="INVALID_CONFIGURATION", details=details
        )


class FetchFailedException(CacheException):
    """Raised when the data source behind a read-through or warmup fails."""

    def __init__(
        self,
        key: str,
        message: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message or f"Fetch failed for cache key '{key}'",
            error_code="FETCH_FAILED",
            details={"key": key},
            original_error=original_error,
        )
        self.key = key


class FetchTimeoutException(FetchFailedException):
    """Raised when a cold read-through fetch exceeds the caller's timeout."""

    def __init__(self, key: str, timeout_seconds: float):
        super().__init__(
            key=key,
            message=f"Fetch for cache key '{key}' timed out after {timeout_seconds}s",
        )
        self.error_code = "FETCH_TIMEOUT"
        self.details["timeout_seconds"] = timeout_seconds
        self.timeout_seconds = timeout_seconds


class RateLimitExceededException(CacheException):
    """Raised when an identifier has used up its window.

    Carries the limiter decision so the caller can build a ``Retry-After``
    hint. The guarded operation must not run once this is raised.
    """

    def __init__(self, result: Any, message: Optional[str] = None):
        super().__init__(
            message=message or "Too many requests, please try again later.",
            error_code="RATE_LIMIT_EXCEEDED",
            details={
                "identifier": result.identifier,
                "limit": result.limit,
                "window_ms": result.window_ms,
                "reset_at": result.reset_at,
                "retry_after": result.retry_after,
            },
        )
        self.result = result
