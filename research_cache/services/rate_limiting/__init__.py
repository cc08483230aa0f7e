"""
Rate Limiting Services

Fixed window rate limiting keyed by a pluggable request identifier.
Provides the limiter, HTTP middleware and a per-route dependency.
"""

from .dependencies import RateLimit
from .identifiers import (
    by_client_ip,
    by_principal,
    by_principal_or_ip,
    by_route_and_principal,
)
from .middleware import RateLimitingMiddleware, RateLimitRule, rate_limit_response
from .rate_limiter import RateLimitConfig, RateLimiter, RateLimitResult

__all__ = [
    "RateLimit",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitResult",
    "RateLimitRule",
    "RateLimitingMiddleware",
    "by_client_ip",
    "by_principal",
    "by_principal_or_ip",
    "by_route_and_principal",
    "rate_limit_response",
]
