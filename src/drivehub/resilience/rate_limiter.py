"""Rate limiting with token bucket algorithm.

Per-source admission control for provider calls. Bucket state lives in a
pluggable backend: process local (sharded, lazily expired), Redis (atomic Lua
script, shared by instances) or the database (fixed-window attempt counter,
shared by instances).
"""

from __future__ import annotations

import asyncio
import math
import time
import zlib
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from redis.asyncio import Redis

from drivehub.resilience.models import RateLimitConfig
from drivehub.storage.exceptions import ThrottledError

logger = structlog.get_logger(__name__)


class BucketBackend(ABC):
    """Storage for token bucket state."""

    @abstractmethod
    async def try_acquire(self, key: str, config: RateLimitConfig) -> float:
        """Try to take one token.

        Args:
            key: Bucket key
            config: Bucket limits

        Returns:
            0.0 if a token was taken, otherwise seconds until one is available
        """
        ...

    @abstractmethod
    async def block(self, key: str, seconds: float) -> None:
        """Refuse all tokens for ``key`` for the next ``seconds``."""
        ...

    @abstractmethod
    async def reset(self, key: str) -> None:
        ...

    async def purge(self) -> int:
        """Drop expired bucket state; returns the number of entries removed."""
        return 0


@dataclass
class _Bucket:
    tokens: float
    updated: float
    blocked_until: float = 0.0


class LocalBucketBackend(BucketBackend):
    """In-process bucket store.

    Keys are spread over shards, each guarded by its own ``asyncio.Lock``.
    Idle buckets are dropped lazily when their shard is touched and the shard
    is over its key bound; there is no background cleanup task.
    """

    def __init__(
        self,
        shards: int = 16,
        max_keys: int = 10_000,
        idle_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize local bucket backend.

        Args:
            shards: Number of independently locked shards
            max_keys: Upper bound on tracked buckets across all shards
            idle_ttl_seconds: Idle time after which a bucket may be dropped
            clock: Monotonic clock (injectable for tests)
        """
        self._shards: list[dict[str, _Bucket]] = [{} for _ in range(shards)]
        self._locks = [asyncio.Lock() for _ in range(shards)]
        self._max_per_shard = max(1, max_keys // shards)
        self._idle_ttl = idle_ttl_seconds
        self._clock = clock

    def _shard(self, key: str) -> int:
        return zlib.crc32(key.encode()) % len(self._shards)

    def _drop_idle(self, shard: dict[str, _Bucket], now: float) -> int:
        idle = [
            k for k, b in shard.items()
            if now - b.updated > self._idle_ttl and b.blocked_until <= now
        ]
        for key in idle:
            del shard[key]
        return len(idle)

    def _evict(self, shard: dict[str, _Bucket], now: float) -> None:
        if len(shard) < self._max_per_shard:
            return

        self._drop_idle(shard, now)

        # Still full: drop the least recently used buckets
        overflow = len(shard) - self._max_per_shard + 1
        if overflow > 0:
            for key, _ in sorted(shard.items(), key=lambda kv: kv[1].updated)[:overflow]:
                del shard[key]

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)

    async def try_acquire(self, key: str, config: RateLimitConfig) -> float:
        index = self._shard(key)
        async with self._locks[index]:
            shard = self._shards[index]
            now = self._clock()

            bucket = shard.get(key)
            if bucket is None:
                self._evict(shard, now)
                bucket = _Bucket(tokens=float(config.max_tokens), updated=now)
                shard[key] = bucket

            if bucket.blocked_until > now:
                return bucket.blocked_until - now

            # Refill tokens based on time elapsed
            elapsed = now - bucket.updated
            bucket.tokens = min(bucket.tokens + elapsed * config.tokens_per_second, config.max_tokens)
            bucket.updated = now

            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return 0.0

            return (1 - bucket.tokens) / config.tokens_per_second

    async def block(self, key: str, seconds: float) -> None:
        index = self._shard(key)
        async with self._locks[index]:
            shard = self._shards[index]
            now = self._clock()
            bucket = shard.get(key)
            if bucket is None:
                self._evict(shard, now)
                bucket = _Bucket(tokens=0.0, updated=now)
                shard[key] = bucket
            bucket.blocked_until = max(bucket.blocked_until, now + seconds)

    async def reset(self, key: str) -> None:
        index = self._shard(key)
        async with self._locks[index]:
            self._shards[index].pop(key, None)

    async def purge(self) -> int:
        now = self._clock()
        removed = 0
        for shard, lock in zip(self._shards, self._locks):
            async with lock:
                removed += self._drop_idle(shard, now)
        return removed


# Returns wait time in milliseconds, 0 if a token was taken
_ACQUIRE_SCRIPT = """
local key = KEYS[1]
local max_tokens = tonumber(ARGV[1])
local tokens_per_second = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local bucket = redis.call('HMGET', key, 'tokens', 'last_update', 'blocked_until')
local current_tokens = tonumber(bucket[1]) or max_tokens
local last_update = tonumber(bucket[2]) or now
local blocked_until = tonumber(bucket[3]) or 0

if blocked_until > now then
    return math.ceil((blocked_until - now) * 1000)
end

local time_elapsed = math.max(now - last_update, 0)
current_tokens = math.min(current_tokens + time_elapsed * tokens_per_second, max_tokens)

local wait = 0
if current_tokens >= 1 then
    current_tokens = current_tokens - 1
else
    wait = math.ceil((1 - current_tokens) / tokens_per_second * 1000)
end

redis.call('HSET', key, 'tokens', tostring(current_tokens), 'last_update', tostring(now))
redis.call('EXPIRE', key, ttl)
return wait
"""

_BLOCK_SCRIPT = """
local key = KEYS[1]
local until_ts = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])

local current = tonumber(redis.call('HGET', key, 'blocked_until')) or 0
if until_ts > current then
    redis.call('HSET', key, 'blocked_until', tostring(until_ts))
end
redis.call('EXPIRE', key, ttl)
return 1
"""


class RedisBucketBackend(BucketBackend):
    """Distributed bucket store using an atomic Lua token bucket.

    Falls back to a local backend when Redis is unreachable so provider calls
    degrade to per-instance limiting instead of failing.
    """

    def __init__(
        self,
        redis_client: Redis[Any],
        key_prefix: str = "drivehub:rate_limit",
        fallback: LocalBucketBackend | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self._prefix = key_prefix
        self._fallback = fallback or LocalBucketBackend()
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def try_acquire(self, key: str, config: RateLimitConfig) -> float:
        # Keep bucket for two full refills
        ttl = max(2, math.ceil(2 * config.max_tokens / config.tokens_per_second))

        try:
            wait_ms = await self._redis.eval(
                _ACQUIRE_SCRIPT,
                1,
                self._key(key),
                str(config.max_tokens),
                str(config.tokens_per_second),
                str(self._clock()),
                str(ttl),
            )
        except Exception as e:
            logger.error(
                "rate_limit_redis_error",
                key=key,
                error=str(e),
            )
            # Fall back to local rate limiting
            return await self._fallback.try_acquire(key, config)

        return int(wait_ms) / 1000.0

    async def block(self, key: str, seconds: float) -> None:
        try:
            await self._redis.eval(
                _BLOCK_SCRIPT,
                1,
                self._key(key),
                str(self._clock() + seconds),
                str(max(1, math.ceil(seconds) + 1)),
            )
        except Exception as e:
            logger.error(
                "rate_limit_redis_error",
                key=key,
                error=str(e),
            )
            await self._fallback.block(key, seconds)

    async def reset(self, key: str) -> None:
        await self._redis.delete(self._key(key))
        await self._fallback.reset(key)

    async def purge(self) -> int:
        # Redis keys expire on their own; only the fallback holds stale state
        return await self._fallback.purge()


class DatabaseBucketBackend(BucketBackend):
    """Fixed-window attempt counter in the ``rate_limit_attempts`` table.

    Each call upserts ``(identifier, count, expires_at)`` atomically; a call
    is admitted while the window count stays within ``requests_per_window``.
    """

    def __init__(
        self,
        session_factory: Any = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize database bucket backend.

        Args:
            session_factory: Async context manager factory yielding an
                AsyncSession (defaults to drivehub.database.get_session)
            clock: UTC wall clock (injectable for tests)
        """
        if session_factory is None:
            from drivehub.database.connection import get_session

            session_factory = get_session
        self._session = session_factory
        self._clock = clock or (lambda: datetime.now(UTC))

    async def try_acquire(self, key: str, config: RateLimitConfig) -> float:
        from drivehub.database.repositories import RateLimitAttemptRepository

        now = self._clock()
        async with self._session() as session:
            count, expires_at = await RateLimitAttemptRepository.hit(
                session, key, config.window_seconds, now=now
            )

        if count <= config.requests_per_window:
            return 0.0
        return max((expires_at - now).total_seconds(), 0.001)

    async def block(self, key: str, seconds: float) -> None:
        from drivehub.database.repositories import RateLimitAttemptRepository

        until = self._clock() + timedelta(seconds=seconds)
        async with self._session() as session:
            await RateLimitAttemptRepository.block(session, key, until)

    async def reset(self, key: str) -> None:
        from drivehub.database.repositories import RateLimitAttemptRepository

        async with self._session() as session:
            await RateLimitAttemptRepository.reset(session, key)

    async def purge(self) -> int:
        from drivehub.database.repositories import RateLimitAttemptRepository

        async with self._session() as session:
            return await RateLimitAttemptRepository.purge_expired(session, now=self._clock())


class TokenBucketLimiter:
    """Per-source token bucket rate limiter.

    Implements rate limiting using token bucket algorithm:
    - Tokens refill at a constant rate (requests_per_window / window_seconds)
    - Each provider call consumes one token
    - Calls wait for a token up to ``max_wait_seconds``, then fail as throttled
    - A provider throttle signal blocks the bucket for its Retry-After
    """

    def __init__(
        self,
        backend: BucketBackend | None = None,
        default_config: RateLimitConfig | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """Initialize rate limiter.

        Args:
            backend: Bucket state backend (local if None)
            default_config: Limits used for keys without a specific config
            sleep: Async sleep (injectable for tests)
        """
        self.backend = backend or LocalBucketBackend()
        self.default_config = default_config or RateLimitConfig()
        self._sleep = sleep

        logger.info(
            "rate_limiter_initialized",
            backend=type(self.backend).__name__,
            requests_per_window=self.default_config.requests_per_window,
            window_seconds=self.default_config.window_seconds,
        )

    async def acquire(self, key: str, config: RateLimitConfig | None = None) -> None:
        """Take a token, waiting for refill if needed.

        Args:
            key: Rate limit key (source id)
            config: Limits for this key

        Raises:
            ThrottledError: If no token becomes available within max_wait_seconds
        """
        config = config or self.default_config
        if not config.enabled:
            return

        waited = 0.0
        while True:
            wait = await self.backend.try_acquire(key, config)
            if wait <= 0:
                if waited:
                    logger.debug("rate_limit_acquired", key=key, waited=waited)
                return

            if waited + wait > config.max_wait_seconds:
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    retry_after=wait,
                )
                raise ThrottledError(
                    f"Rate limit exceeded for '{key}'",
                    source_id=key,
                    retry_after=wait,
                )

            await self._sleep(wait)
            waited += wait

    async def block(self, key: str, seconds: float) -> None:
        """Pause the bucket so concurrent callers back off too."""
        if seconds <= 0:
            return
        await self.backend.block(key, seconds)
        logger.info("rate_limit_blocked", key=key, seconds=seconds)

    async def reset(self, key: str) -> None:
        await self.backend.reset(key)
        logger.info("rate_limit_reset", key=key)

    async def purge(self) -> int:
        """Drop expired bucket state from the backend."""
        removed = await self.backend.purge()
        if removed:
            logger.info("rate_limit_buckets_purged", removed=removed)
        return removed
