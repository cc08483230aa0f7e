"""
Shared pytest configuration.

Fixtures for a controllable clock, both backing store variants and a fully
wired cache service over the in-memory store.
"""

import os
from uuid import uuid4

import pytest
import pytest_asyncio

# Set test environment variables before importing app modules
os.environ["ENVIRONMENT"] = "test"
os.environ["REDIS_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["LOG_JSON"] = "false"
os.environ["CACHE_SWEEP_INTERVAL_SECONDS"] = "0"

from research_cache.infrastructure.stores.memory_store import InMemoryStore
from research_cache.infrastructure.stores.remote_store import RemoteStore
from research_cache.services.cache.cache_service import CacheService


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryStore(clock=clock)


async def _fake_redis_store(clock):
    fakeredis = pytest.importorskip("fakeredis")
    pytest.importorskip("lupa")
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    return client, RemoteStore(client, prefix=f"test-{uuid4().hex[:8]}", clock=clock)


@pytest_asyncio.fixture
async def redis_store(clock):
    """Redis-backed store over fakeredis; skipped when fakeredis is missing."""
    client, store = await _fake_redis_store(clock)
    yield store
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture(params=["memory", "redis"])
async def store(request, clock):
    """Each backing store variant in turn."""
    if request.param == "memory":
        yield InMemoryStore(clock=clock)
        return
    client, remote = await _fake_redis_store(clock)
    yield remote
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def cache_service(memory_store, clock):
    service = CacheService(
        memory_store,
        clock=clock,
        default_ttl_seconds=60,
        stale_window_seconds=120,
        fetch_timeout_seconds=5.0,
    )
    await service.init()
    yield service
    await service.flush_and_close()
