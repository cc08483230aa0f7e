"""
Backing Store Infrastructure Module

Backing store implementations selected once at startup:
- InMemoryStore: process-local store for single-instance deployments
- RemoteStore: Redis store shared between instances, with Lua atomicity
- StoreCircuitBreaker: circuit breaker guarding Redis calls
- create_backing_store: configuration-driven selection with fallback
"""

from .circuit_breaker import CircuitBreakerConfig, CircuitState, StoreCircuitBreaker
from .exceptions import (
    BackingStoreUnavailableException,
    StoreCircuitOpenException,
    StoreException,
)
from .factory import create_backing_store
from .memory_store import InMemoryStore
from .remote_store import RemoteStore

__all__ = [
    "BackingStoreUnavailableException",
    "CircuitBreakerConfig",
    "CircuitState",
    "InMemoryStore",
    "RemoteStore",
    "StoreCircuitBreaker",
    "StoreCircuitOpenException",
    "StoreException",
    "create_backing_store",
]
