"""
Remote Backing Store - Redis

Redis implementation of the backing store contract, shared by every process
pointing at the same Redis. Composite mutations run as Lua scripts so that
entry writes, tag indexing, recency touches and window counters are atomic
across processes. Redis client errors are translated into store exceptions
and guarded by a circuit breaker.

Key layout (``P`` is the configured prefix)::

    P:entry:<key>      entry payload, PX = freshness TTL + stale window
    P:keytags:<key>    set of the entry's tags
    P:tag:<tag>        set of keys carrying the tag
    P:tags             set of tag names in use
    P:lru              sorted set, key -> access sequence
    P:clock            access sequence counter
    P:access / P:atime hash of access count / last access ms per key
    P:sizes / P:bytes  hash of entry sizes / aggregate byte counter
    P:stats:hits|misses lookup counters
    P:lease:<name>     refresh claim, SET NX PX
    P:rl:<identifier>  fixed rate window counter
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from redis.asyncio import Redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
)

from ...constants import DEFAULT_KEY_PREFIX, current_time_ms
from ...domain.cache.repository_interfaces import BackingStore, StoredEntry
from .circuit_breaker import CircuitBreakerConfig, StoreCircuitBreaker
from .exceptions import (
    BackingStoreUnavailableException,
    StoreCircuitOpenException,
    StoreException,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

UNAVAILABLE_ERRORS = (
    RedisConnectionError,
    RedisTimeoutError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)

# KEYS: entry, keytags, lru, clock, access, atime, sizes, bytes, tags
# ARGV: key, payload, retention_ms, size, now_ms, tag_prefix, tag...
WRITE_ENTRY_SCRIPT = """
local key = ARGV[1]
local tag_prefix = ARGV[6]
local new_tags = {}
for i = 7, #ARGV do
    new_tags[ARGV[i]] = true
end

local old_tags = redis.call('SMEMBERS', KEYS[2])
for _, tag in ipairs(old_tags) do
    if not new_tags[tag] then
        redis.call('SREM', tag_prefix .. tag, key)
        if redis.call('SCARD', tag_prefix .. tag) == 0 then
            redis.call('SREM', KEYS[9], tag)
        end
    end
end

redis.call('DEL', KEYS[2])
for i = 7, #ARGV do
    redis.call('SADD', KEYS[2], ARGV[i])
    redis.call('SADD', tag_prefix .. ARGV[i], key)
    redis.call('SADD', KEYS[9], ARGV[i])
end

redis.call('SET', KEYS[1], ARGV[2], 'PX', ARGV[3])

local previous = tonumber(redis.call('HGET', KEYS[7], key) or '0')
redis.call('HSET', KEYS[7], key, ARGV[4])
redis.call('INCRBY', KEYS[8], tonumber(ARGV[4]) - previous)

local seq = redis.call('INCR', KEYS[4])
redis.call('ZADD', KEYS[3], seq, key)
redis.call('HSET', KEYS[6], key, ARGV[5])
redis.call('HSETNX', KEYS[5], key, 0)
return seq
"""

# KEYS: entry, keytags, lru, clock, access, atime, sizes, bytes, tags
# ARGV: key, tag_prefix
REMOVE_ENTRY_SCRIPT = """
local key = ARGV[1]
local tag_prefix = ARGV[2]
local existed = redis.call('DEL', KEYS[1])

local tags = redis.call('SMEMBERS', KEYS[2])
for _, tag in ipairs(tags) do
    redis.call('SREM', tag_prefix .. tag, key)
    if redis.call('SCARD', tag_prefix .. tag) == 0 then
        redis.call('SREM', KEYS[9], tag)
    end
end
redis.call('DEL', KEYS[2])

local size = tonumber(redis.call('HGET', KEYS[7], key) or '0')
if size ~= 0 then
    redis.call('DECRBY', KEYS[8], size)
end
redis.call('HDEL', KEYS[7], key)
redis.call('ZREM', KEYS[3], key)
redis.call('HDEL', KEYS[5], key)
redis.call('HDEL', KEYS[6], key)
return existed
"""

# KEYS: entry, keytags, lru, clock, access, atime, sizes, bytes, tags
# ARGV: key, now_ms
TOUCH_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
local seq = redis.call('INCR', KEYS[4])
redis.call('ZADD', KEYS[3], seq, ARGV[1])
redis.call('HINCRBY', KEYS[5], ARGV[1], 1)
redis.call('HSET', KEYS[6], ARGV[1], ARGV[2])
return 1
"""

# KEYS: entry, keytags, lru, clock, access, atime, sizes, bytes, tags
# ARGV: key, tag_prefix, tag...
INDEX_TAGS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
for i = 3, #ARGV do
    redis.call('SADD', KEYS[2], ARGV[i])
    redis.call('SADD', ARGV[2] .. ARGV[i], ARGV[1])
    redis.call('SADD', KEYS[9], ARGV[i])
end
return 1
"""

# KEYS: entry, keytags, lru, clock, access, atime, sizes, bytes, tags
# ARGV: key, tag_prefix
UNINDEX_ALL_SCRIPT = """
local tags = redis.call('SMEMBERS', KEYS[2])
for _, tag in ipairs(tags) do
    redis.call('SREM', ARGV[2] .. tag, ARGV[1])
    if redis.call('SCARD', ARGV[2] .. tag) == 0 then
        redis.call('SREM', KEYS[9], tag)
    end
end
redis.call('DEL', KEYS[2])
return #tags
"""

# Drops index records whose entry payload Redis has already expired.
# KEYS: lru, access, atime, sizes, bytes, tags
# ARGV: entry_prefix, keytags_prefix, tag_prefix
PRUNE_DEAD_LUA = """
local function prune_dead()
    local pruned = 0
    for _, key in ipairs(redis.call('ZRANGE', KEYS[1], 0, -1)) do
        if redis.call('EXISTS', ARGV[1] .. key) == 0 then
            local keytags = ARGV[2] .. key
            for _, tag in ipairs(redis.call('SMEMBERS', keytags)) do
                redis.call('SREM', ARGV[3] .. tag, key)
                if redis.call('SCARD', ARGV[3] .. tag) == 0 then
                    redis.call('SREM', KEYS[6], tag)
                end
            end
            redis.call('DEL', keytags)
            local size = tonumber(redis.call('HGET', KEYS[4], key) or '0')
            if size ~= 0 then
                redis.call('DECRBY', KEYS[5], size)
            end
            redis.call('HDEL', KEYS[4], key)
            redis.call('HDEL', KEYS[2], key)
            redis.call('HDEL', KEYS[3], key)
            redis.call('ZREM', KEYS[1], key)
            pruned = pruned + 1
        end
    end
    return pruned
end
"""

USAGE_SCRIPT = PRUNE_DEAD_LUA + """
local pruned = prune_dead()
return {redis.call('ZCARD', KEYS[1]), tonumber(redis.call('GET', KEYS[5]) or '0'), pruned}
"""

# ARGV[4]: number of keys to return, least recently used first
LRU_KEYS_SCRIPT = PRUNE_DEAD_LUA + """
prune_dead()
return redis.call('ZRANGE', KEYS[1], 0, tonumber(ARGV[4]) - 1)
"""

# KEYS: window counter; ARGV: window_ms
INCREMENT_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if count == 1 or ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

# KEYS: lease; ARGV: token
RELEASE_LEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RemoteStore(BackingStore):
    """Redis-backed store shared between service instances."""

    name = "redis"
    shared = True

    def __init__(
        self,
        client: Redis,
        prefix: str = DEFAULT_KEY_PREFIX,
        breaker: Optional[StoreCircuitBreaker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._prefix = prefix
        self._clock = clock
        self.breaker = breaker or StoreCircuitBreaker(
            CircuitBreakerConfig(failure_exceptions=UNAVAILABLE_ERRORS)
        )

        self._write_entry = client.register_script(WRITE_ENTRY_SCRIPT)
        self._remove_entry = client.register_script(REMOVE_ENTRY_SCRIPT)
        self._touch = client.register_script(TOUCH_SCRIPT)
        self._index_tags = client.register_script(INDEX_TAGS_SCRIPT)
        self._unindex_all = client.register_script(UNINDEX_ALL_SCRIPT)
        self._increment_window = client.register_script(INCREMENT_WINDOW_SCRIPT)
        self._release_lease = client.register_script(RELEASE_LEASE_SCRIPT)
        self._usage = client.register_script(USAGE_SCRIPT)
        self._lru_keys = client.register_script(LRU_KEYS_SCRIPT)

    @classmethod
    def from_url(
        cls,
        url: str,
        prefix: str = DEFAULT_KEY_PREFIX,
        max_connections: int = 10,
        connection_timeout: float = 5.0,
        operation_timeout: float = 2.0,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> "RemoteStore":
        """Build a store with its own connection pool."""
        client = Redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections,
            socket_connect_timeout=connection_timeout,
            socket_timeout=operation_timeout,
        )
        breaker = StoreCircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=failure_threshold,
                recovery_timeout=recovery_timeout,
                failure_exceptions=UNAVAILABLE_ERRORS,
            )
        )
        return cls(client, prefix=prefix, breaker=breaker, clock=clock)

    # Key layout

    def _k(self, *parts: str) -> str:
        return ":".join((self._prefix,) + parts)

    @property
    def _tag_prefix(self) -> str:
        return self._k("tag") + ":"

    def _entry_keys(self, key: str) -> List[str]:
        return [
            self._k("entry", key),
            self._k("keytags", key),
            self._k("lru"),
            self._k("clock"),
            self._k("access"),
            self._k("atime"),
            self._k("sizes"),
            self._k("bytes"),
            self._k("tags"),
        ]

    def _index_keys(self) -> List[str]:
        return [
            self._k("lru"),
            self._k("access"),
            self._k("atime"),
            self._k("sizes"),
            self._k("bytes"),
            self._k("tags"),
        ]

    def _index_args(self) -> List[str]:
        return [self._k("entry") + ":", self._k("keytags") + ":", self._tag_prefix]

    async def _execute(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run a Redis call through the circuit breaker, translating errors."""
        with tracer.start_as_current_span(f"store.redis.{operation}") as span:
            span.set_attribute("store.operation", operation)
            try:
                result = await self.breaker.call(func)
                span.set_status(Status(StatusCode.OK))
                return result
            except StoreCircuitOpenException:
                span.set_status(Status(StatusCode.ERROR, "Circuit breaker open"))
                raise
            except UNAVAILABLE_ERRORS as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise BackingStoreUnavailableException(
                    message=f"Redis unavailable during {operation}",
                    backend=self.name,
                    operation=operation,
                    original_error=e,
                ) from e
            except RedisError as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                logger.error(
                    f"Redis operation failed: {operation}",
                    extra={"operation": operation, "error": str(e)},
                )
                raise StoreException(
                    message=f"Redis operation '{operation}' failed",
                    error_code="STORE_OPERATION_FAILED",
                    details={"operation": operation},
                    original_error=e,
                ) from e

    async def initialize(self) -> None:
        await self._execute("ping", self._client.ping)
        logger.info("Redis backing store connected", extra={"prefix": self._prefix})

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis backing store closed")

    async def ping(self) -> bool:
        try:
            return bool(await self._execute("ping", self._client.ping))
        except StoreException:
            return False

    # Entries

    async def write_entry(
        self,
        key: str,
        payload: str,
        retention_ms: int,
        tags: Iterable[str],
        size_bytes: int,
    ) -> None:
        args = [
            key,
            payload,
            max(1, int(retention_ms)),
            int(size_bytes),
            current_time_ms(self._clock),
            self._tag_prefix,
            *tags,
        ]
        await self._execute(
            "write_entry",
            lambda: self._write_entry(keys=self._entry_keys(key), args=args),
        )

    async def read_entry(self, key: str) -> Optional[StoredEntry]:
        async def _read():
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.get(self._k("entry", key))
                pipe.smembers(self._k("keytags", key))
                pipe.hget(self._k("access"), key)
                pipe.hget(self._k("atime"), key)
                return await pipe.execute()

        payload, tags, access_count, accessed_at = await self._execute(
            "read_entry", _read
        )
        if payload is None:
            return None
        return StoredEntry(
            key=key,
            payload=payload,
            tags=set(tags or ()),
            access_count=int(access_count or 0),
            last_accessed_at=int(accessed_at or 0),
        )

    async def has_entry(self, key: str) -> bool:
        exists = await self._execute(
            "has_entry", lambda: self._client.exists(self._k("entry", key))
        )
        return bool(exists)

    async def remove_entry(self, key: str) -> bool:
        existed = await self._execute(
            "remove_entry",
            lambda: self._remove_entry(
                keys=self._entry_keys(key), args=[key, self._tag_prefix]
            ),
        )
        return bool(existed)

    async def touch(self, key: str) -> bool:
        touched = await self._execute(
            "touch",
            lambda: self._touch(
                keys=self._entry_keys(key), args=[key, current_time_ms(self._clock)]
            ),
        )
        return bool(touched)

    # Tag index

    async def index_tags(self, key: str, tags: Iterable[str]) -> bool:
        args = [key, self._tag_prefix, *tags]
        indexed = await self._execute(
            "index_tags",
            lambda: self._index_tags(keys=self._entry_keys(key), args=args),
        )
        return bool(indexed)

    async def unindex_all(self, key: str) -> None:
        await self._execute(
            "unindex_all",
            lambda: self._unindex_all(
                keys=self._entry_keys(key), args=[key, self._tag_prefix]
            ),
        )

    async def keys_for_tag(self, tag: str) -> Set[str]:
        members = await self._execute(
            "keys_for_tag", lambda: self._client.smembers(self._tag_prefix + tag)
        )
        return set(members or ())

    async def tag_counts(self) -> Dict[str, int]:
        await self.usage()
        tags = sorted(
            await self._execute(
                "tag_names", lambda: self._client.smembers(self._k("tags"))
            )
            or ()
        )
        if not tags:
            return {}

        async def _count():
            async with self._client.pipeline(transaction=False) as pipe:
                for tag in tags:
                    pipe.scard(self._tag_prefix + tag)
                return await pipe.execute()

        counts = await self._execute("tag_counts", _count)
        return {tag: int(count) for tag, count in zip(tags, counts) if int(count) > 0}

    # Recency and accounting

    async def lru_keys(self, count: int) -> List[str]:
        if count <= 0:
            return []
        args = [*self._index_args(), int(count)]
        return list(
            await self._execute(
                "lru_keys",
                lambda: self._lru_keys(keys=self._index_keys(), args=args),
            )
        )

    async def tracked_keys(self) -> List[str]:
        return list(
            await self._execute(
                "tracked_keys", lambda: self._client.zrange(self._k("lru"), 0, -1)
            )
        )

    async def usage(self) -> Tuple[int, int]:
        entries, total_bytes, pruned = await self._execute(
            "usage",
            lambda: self._usage(keys=self._index_keys(), args=self._index_args()),
        )
        if pruned:
            logger.debug(f"Pruned {pruned} expired entries from the cache index")
        return int(entries or 0), int(total_bytes or 0)

    async def access_counts(self) -> Dict[str, int]:
        await self.usage()
        raw = await self._execute(
            "access_counts", lambda: self._client.hgetall(self._k("access"))
        )
        return {key: int(count) for key, count in (raw or {}).items()}

    async def record_lookup(self, hit: bool) -> None:
        counter = self._k("stats", "hits" if hit else "misses")
        await self._execute("record_lookup", lambda: self._client.incr(counter))

    async def lookup_counts(self) -> Tuple[int, int]:
        hits, misses = await self._execute(
            "lookup_counts",
            lambda: self._client.mget(
                self._k("stats", "hits"), self._k("stats", "misses")
            ),
        )
        return int(hits or 0), int(misses or 0)

    async def clear(self) -> int:
        """Delete every cache key under the prefix.

        Not atomic with respect to concurrent writers: an entry written while
        the scan runs may survive without its index records, and is cleaned
        up by the next expired-entry sweep.
        """

        async def _clear():
            removed = 0
            patterns = [self._k("entry", "*"), self._k("keytags", "*"), self._tag_prefix + "*"]
            for pattern in patterns:
                batch: List[str] = []
                async for name in self._client.scan_iter(match=pattern, count=500):
                    batch.append(name)
                    if len(batch) >= 500:
                        deleted = await self._client.delete(*batch)
                        if pattern == patterns[0]:
                            removed += deleted
                        batch = []
                if batch:
                    deleted = await self._client.delete(*batch)
                    if pattern == patterns[0]:
                        removed += deleted
            await self._client.delete(
                self._k("lru"),
                self._k("access"),
                self._k("atime"),
                self._k("sizes"),
                self._k("bytes"),
                self._k("tags"),
                self._k("stats", "hits"),
                self._k("stats", "misses"),
            )
            return removed

        return await self._execute("clear", _clear)

    # Rate windows

    async def increment_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        count, ttl = await self._execute(
            "increment_window",
            lambda: self._increment_window(
                keys=[self._k("rl", key)], args=[int(window_ms)]
            ),
        )
        return int(count), int(ttl)

    async def window_status(self, key: str) -> Optional[Tuple[int, int]]:
        async def _status():
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.get(self._k("rl", key))
                pipe.pttl(self._k("rl", key))
                return await pipe.execute()

        count, ttl = await self._execute("window_status", _status)
        if count is None or int(ttl) < 0:
            return None
        return int(count), int(ttl)

    async def reset_window(self, key: str) -> bool:
        deleted = await self._execute(
            "reset_window", lambda: self._client.delete(self._k("rl", key))
        )
        return bool(deleted)

    # Refresh leases

    async def acquire_lease(self, name: str, token: str, ttl_ms: int) -> bool:
        acquired = await self._execute(
            "acquire_lease",
            lambda: self._client.set(
                self._k("lease", name), token, nx=True, px=int(ttl_ms)
            ),
        )
        return bool(acquired)

    async def release_lease(self, name: str, token: str) -> bool:
        released = await self._execute(
            "release_lease",
            lambda: self._release_lease(keys=[self._k("lease", name)], args=[token]),
        )
        return bool(released)

    def get_state(self) -> Dict[str, Any]:
        """Connection and breaker snapshot for health checks."""
        return {"backend": self.name, "prefix": self._prefix, "breaker": self.breaker.get_state()}
