"""
Research Cache Configuration

Configuration management with environment variable support.
Implements secure defaults and validation for all settings.
"""

from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..constants import DEFAULT_KEY_PREFIX

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation and secure defaults."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Environment settings
    ENVIRONMENT: str = Field(
        default="development", description="Application environment"
    )
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: bool = Field(default=True, description="Render logs as JSON lines")

    # Redis configuration
    REDIS_ENABLED: bool = Field(
        default=True,
        description="Use Redis as the shared backing store (in-memory otherwise)",
    )
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    REDIS_MAX_CONNECTIONS: int = Field(
        default=10, ge=1, le=100, description="Redis connection pool size"
    )
    REDIS_CONNECTION_TIMEOUT: float = Field(
        default=5.0, gt=0, le=60, description="Redis socket connect timeout (s)"
    )
    REDIS_OPERATION_TIMEOUT: float = Field(
        default=2.0, gt=0, le=60, description="Redis socket operation timeout (s)"
    )
    REDIS_CONNECT_ATTEMPTS: int = Field(
        default=3, ge=1, le=10, description="Startup connection attempts"
    )

    # Circuit breaker settings
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(
        default=5, ge=1, le=50, description="Circuit breaker failure threshold"
    )
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: float = Field(
        default=30.0,
        ge=1,
        le=600,
        description="Circuit breaker recovery timeout in seconds",
    )

    # Cache configuration
    CACHE_KEY_PREFIX: str = Field(
        default=DEFAULT_KEY_PREFIX, min_length=1, description="Backing store key prefix"
    )
    CACHE_DEFAULT_TTL_SECONDS: int = Field(
        default=300, ge=1, description="Default freshness TTL for cache writes"
    )
    CACHE_STALE_WINDOW_SECONDS: int = Field(
        default=300,
        ge=0,
        description="How long an expired entry stays servable as stale",
    )
    CACHE_MAX_ENTRIES: int = Field(
        default=10_000, ge=1, description="Entry-count budget before LRU eviction"
    )
    CACHE_MAX_BYTES: int = Field(
        default=64 * 1024 * 1024, ge=1, description="Byte budget before LRU eviction"
    )
    CACHE_FETCH_TIMEOUT_SECONDS: float = Field(
        default=30.0, gt=0, description="Default bound on cold read-through fetches"
    )
    CACHE_REFRESH_LEASE_MS: int = Field(
        default=30_000, ge=100, description="TTL of the distributed refresh claim key"
    )
    CACHE_SWEEP_INTERVAL_SECONDS: float = Field(
        default=60.0,
        ge=0,
        description="Interval of the expired-entry sweep (0 disables it)",
    )

    # Rate limiting configuration
    RATE_LIMIT_ENABLED: bool = Field(default=True, description="Enable rate limiting")
    RATE_LIMIT_DEFAULT_LIMIT: int = Field(
        default=100, ge=1, description="Requests allowed per window"
    )
    RATE_LIMIT_DEFAULT_WINDOW_MS: int = Field(
        default=15 * 60 * 1000, ge=1, description="Fixed window length in ms"
    )
    RATE_LIMIT_MESSAGE: str = Field(
        default="Too many requests, please try again later.",
        description="Message returned with HTTP 429",
    )
    RATE_LIMIT_HEADERS_ENABLED: bool = Field(
        default=True, description="Emit X-RateLimit-* headers"
    )
    RATE_LIMIT_EXCLUDE_PATHS: str = Field(
        default="/health,/metrics,/docs,/openapi.json",
        description="Paths excluded from rate limiting (comma-separated)",
    )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value."""
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of: {allowed}")
        return v.upper()

    @field_validator("REDIS_URL")
    @classmethod
    def validate_redis_url(cls, v):
        """Validate Redis URL scheme."""
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("REDIS_URL must be a redis://, rediss:// or unix:// URL")
        return v

    @property
    def rate_limit_exclude_paths_list(self) -> List[str]:
        """Get rate limit exclusions as list."""
        return [
            path.strip()
            for path in self.RATE_LIMIT_EXCLUDE_PATHS.split(",")
            if path.strip()
        ]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
