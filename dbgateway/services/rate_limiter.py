# =============================================================================
# Rate Limiter — Token Bucket per (Limiter Class, Identity)
# =============================================================================
#
# Each limiter class ("general", "auth", "ai") has a capacity of `points`
# tokens that refill continuously at points/window per second. Every
# admission check costs one token. A denied check reports how long until
# one token is available again (retry_after_ms).
#
# DESIGN DECISION: Token bucket over a fixed window. A fixed window lets a
# caller spend the full budget at the end of one window and again at the
# start of the next. Continuous refill spreads the budget evenly.
#
# DESIGN DECISION: Graceful degradation. If the bucket store fails,
# the request is admitted and a warning is logged. A broken limiter must
# never take the API down with it.
#
# STORES:
#   InMemoryBucketStore — per-process dict (single gateway instance)
#   RedisBucketStore    — Lua script, shared across gateway instances
#                         (rate_limit_backend = "redis", Redis db 2)
# =============================================================================

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from dbgateway.config import Settings

logger = logging.getLogger(__name__)

GENERAL = "general"
AUTH = "auth"
AI = "ai"


@dataclass(frozen=True)
class LimiterConfig:
    """Budget for one limiter class: `points` requests per `window_seconds`."""

    points: int
    window_seconds: float

    @property
    def rate(self) -> float:
        """Tokens refilled per second."""
        return self.points / self.window_seconds


@dataclass(frozen=True)
class AdmissionResult:
    allowed: bool
    limiter_class: str
    remaining: int
    retry_after_ms: int = 0


def _refill(tokens: float, updated_at: float, now: float, config: LimiterConfig) -> float:
    # Clock going backwards counts as no elapsed time
    elapsed = max(0.0, now - updated_at)
    return min(float(config.points), tokens + elapsed * config.rate)


def _retry_after_ms(tokens: float, config: LimiterConfig) -> int:
    if tokens >= 1:
        return 0
    return max(1, int(math.ceil((1 - tokens) / config.rate * 1000)))


class BucketStore(Protocol):
    """Atomically refill, test and debit one bucket."""

    async def take(
        self, bucket_key: str, config: LimiterConfig, now: float,
    ) -> tuple[bool, float, int]:
        """Returns (allowed, tokens_left, retry_after_ms)."""
        ...

    async def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Store 1: in-process
# ---------------------------------------------------------------------------


class InMemoryBucketStore:
    """
    Buckets in a lock-guarded dict.

    Buckets that have refilled to capacity carry no information (a fresh
    bucket is full), so they are pruned once the dict grows past
    `prune_threshold` entries.
    """

    def __init__(self, prune_threshold: int = 10_000) -> None:
        self._buckets: dict[str, tuple[float, float, LimiterConfig]] = {}
        self._lock = threading.Lock()
        self._prune_threshold = prune_threshold

    def __len__(self) -> int:
        return len(self._buckets)

    async def take(
        self, bucket_key: str, config: LimiterConfig, now: float,
    ) -> tuple[bool, float, int]:
        with self._lock:
            if len(self._buckets) >= self._prune_threshold:
                self._prune_locked(now)

            entry = self._buckets.get(bucket_key)
            if entry is None:
                tokens = float(config.points)
            else:
                tokens = _refill(entry[0], entry[1], now, config)

            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._buckets[bucket_key] = (tokens, now, config)

        return allowed, tokens, 0 if allowed else _retry_after_ms(tokens, config)

    def prune(self, now: float) -> int:
        """Drop buckets that are back at full capacity. Returns the count."""
        with self._lock:
            return self._prune_locked(now)

    def _prune_locked(self, now: float) -> int:
        full = [
            key for key, (tokens, updated_at, config) in self._buckets.items()
            if _refill(tokens, updated_at, now, config) >= config.points
        ]
        for key in full:
            del self._buckets[key]
        return len(full)

    async def close(self) -> None:
        with self._lock:
            self._buckets.clear()


# ---------------------------------------------------------------------------
# Store 2: Redis (multi-instance)
# ---------------------------------------------------------------------------

# KEYS[1] = bucket key
# ARGV    = now_ms, rate (tokens/s), capacity, ttl_seconds
# Returns {allowed, tokens (string, Lua numbers truncate to int), retry_ms}
_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = capacity
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(capacity, tokens + ((now_ms - ts) / 1000.0) * rate)

local allowed = 0
local retry_ms = 0
if tokens >= 1 then
  allowed = 1
  tokens = tokens - 1
else
  retry_ms = math.max(1, math.ceil(((1 - tokens) / rate) * 1000))
end

redis.call("HSET", KEYS[1], "tokens", tostring(tokens), "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)
return {allowed, tostring(tokens), retry_ms}
"""


class RedisBucketStore:
    """Token buckets evaluated atomically inside Redis."""

    def __init__(self, client, key_prefix: str = "ratelimit") -> None:
        self._client = client
        self._key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str) -> RedisBucketStore:
        import redis.asyncio as aioredis
        return cls(aioredis.from_url(url, decode_responses=True))

    async def take(
        self, bucket_key: str, config: LimiterConfig, now: float,
    ) -> tuple[bool, float, int]:
        # Idle buckets expire after twice the time needed to refill fully
        ttl = max(1, int(math.ceil(config.window_seconds * 2)))
        allowed, tokens, retry_ms = await self._client.eval(
            _TOKEN_BUCKET_LUA,
            1,
            f"{self._key_prefix}:{bucket_key}",
            int(now * 1000),
            config.rate,
            config.points,
            ttl,
        )
        return bool(int(allowed)), float(tokens), int(retry_ms)

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Admission control over a set of named limiter classes."""

    def __init__(
        self,
        configs: dict[str, LimiterConfig],
        store: BucketStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._configs = dict(configs)
        self._store = store or InMemoryBucketStore()
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> RateLimiter:
        configs = {
            GENERAL: LimiterConfig(
                settings.rate_limit_general_points, settings.rate_limit_general_window,
            ),
            AUTH: LimiterConfig(
                settings.rate_limit_auth_points, settings.rate_limit_auth_window,
            ),
            AI: LimiterConfig(
                settings.rate_limit_ai_points, settings.rate_limit_ai_window,
            ),
        }
        if settings.rate_limit_backend == "redis":
            # Wall clock: buckets are shared between processes
            return cls(
                configs,
                RedisBucketStore.from_url(settings.rate_limit_redis_url),
                clock=time.time,
            )
        return cls(configs, InMemoryBucketStore())

    @property
    def limiter_classes(self) -> list[str]:
        return sorted(self._configs)

    async def consume(self, limiter_class: str, identity_key: str) -> AdmissionResult:
        """
        Spend one token from the caller's bucket.

        Raises:
            ValueError: unknown limiter class.

        Store failures admit the request (graceful degradation).
        """
        config = self._configs.get(limiter_class)
        if config is None:
            raise ValueError(f"Unknown limiter class '{limiter_class}'")

        try:
            allowed, tokens, retry_after_ms = await self._store.take(
                f"{limiter_class}:{identity_key}", config, self._clock(),
            )
        except Exception as e:
            logger.warning(
                "Rate limiter unavailable (%s store error): %s. "
                "Allowing request through.",
                type(self._store).__name__,
                e,
            )
            return AdmissionResult(
                allowed=True, limiter_class=limiter_class, remaining=config.points,
            )

        if not allowed:
            logger.info(
                "Rate limit hit: class=%s identity=%s retry_after_ms=%d",
                limiter_class, identity_key, retry_after_ms,
            )
        return AdmissionResult(
            allowed=allowed,
            limiter_class=limiter_class,
            remaining=max(0, int(tokens)),
            retry_after_ms=retry_after_ms,
        )

    async def close(self) -> None:
        await self._store.close()
