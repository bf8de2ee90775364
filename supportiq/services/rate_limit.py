from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from redis.asyncio import Redis

from supportiq.core.config import get_settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    ms_before_next: int


@dataclass
class WindowEntry:
    count: int
    reset_time_ms: int


class WindowStore(Protocol):
    async def hit(self, key: str, *, points: int, duration_ms: int, now_ms: int) -> RateLimitDecision:
        ...


class MemoryWindowStore:
    """Process-local fixed-window counters keyed by limiter prefix + caller key."""

    def __init__(self) -> None:
        self._entries: dict[str, WindowEntry] = {}

    async def hit(self, key: str, *, points: int, duration_ms: int, now_ms: int) -> RateLimitDecision:
        # No awaits between read and write, so each hit is atomic on the event loop.
        entry = self._entries.get(key)
        if entry is None or entry.reset_time_ms <= now_ms:
            entry = WindowEntry(count=0, reset_time_ms=now_ms + duration_ms)
            self._entries[key] = entry
        if entry.count >= points:
            return RateLimitDecision(allowed=False, remaining=0, ms_before_next=entry.reset_time_ms - now_ms)
        entry.count += 1
        return RateLimitDecision(
            allowed=True,
            remaining=points - entry.count,
            ms_before_next=entry.reset_time_ms - now_ms,
        )

    def sweep(self, now_ms: int) -> int:
        expired = [key for key, entry in self._entries.items() if entry.reset_time_ms <= now_ms]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# Increment and set expiry atomically so concurrent instances share one window.
_FIXED_WINDOW_LUA = r"""
local current = redis.call("INCR", KEYS[1])
if current == 1 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
local ttl = redis.call("PTTL", KEYS[1])
if ttl < 0 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


class RedisWindowStore:
    """Shared fixed-window counters for multi-instance deployments."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def hit(self, key: str, *, points: int, duration_ms: int, now_ms: int) -> RateLimitDecision:
        _ = now_ms
        current, ttl = await self._redis.eval(_FIXED_WINDOW_LUA, 1, key, duration_ms)
        current = int(current)
        ttl = max(0, int(ttl))
        if current > points:
            return RateLimitDecision(allowed=False, remaining=0, ms_before_next=ttl)
        return RateLimitDecision(allowed=True, remaining=points - current, ms_before_next=ttl)


class FixedWindowRateLimiter:
    def __init__(
        self,
        *,
        points: int,
        duration_s: int,
        key_prefix: str,
        store: WindowStore,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self.points = points
        self.duration_s = duration_s
        self.key_prefix = key_prefix
        self._store = store
        self._time_provider = time_provider or time.time

    async def consume(self, key: str) -> RateLimitDecision:
        now_ms = int(self._time_provider() * 1000)
        return await self._store.hit(
            f"{self.key_prefix}:{key}",
            points=self.points,
            duration_ms=self.duration_s * 1000,
            now_ms=now_ms,
        )


LIMITER_NAMES = ("auth", "api", "sync", "dashboard", "analysis", "webhook")

_memory_store = MemoryWindowStore()
_limiters: dict[str, FixedWindowRateLimiter] = {}
_redis_pool: Redis | None = None
_redis_store: RedisWindowStore | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_time_provider: Callable[[], float] | None = None


def _get_store() -> WindowStore:
    global _redis_pool, _redis_store, _redis_loop
    settings = get_settings()
    if settings.rate_limit_backend.lower() != "redis":
        return _memory_store
    current_loop = asyncio.get_running_loop()
    # Redis connections are bound to the loop that created them.
    if _redis_store is None or _redis_loop != current_loop:
        _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        _redis_store = RedisWindowStore(_redis_pool)
        _redis_loop = current_loop
    return _redis_store


def get_limiter(name: str) -> FixedWindowRateLimiter:
    if name not in LIMITER_NAMES:
        raise ValueError(f"Unknown rate limiter: {name}")
    settings = get_settings()
    store = _get_store()
    limiter = _limiters.get(name)
    if limiter is None or limiter._store is not store:
        limiter = FixedWindowRateLimiter(
            points=int(getattr(settings, f"rl_{name}_points")),
            duration_s=int(getattr(settings, f"rl_{name}_window_s")),
            key_prefix=f"{settings.rl_redis_prefix}:{name}",
            store=store,
            time_provider=_time_provider,
        )
        _limiters[name] = limiter
    return limiter


def sweep_expired(now: float | None = None) -> int:
    return _memory_store.sweep(int((now if now is not None else time.time()) * 1000))


async def run_sweeper(interval_s: int) -> None:
    # Periodically drop expired windows so the in-memory map stays bounded.
    while True:
        await asyncio.sleep(interval_s)
        removed = sweep_expired()
        if removed:
            logger.debug("rate_limit_sweep removed=%s", removed)


def set_time_provider(provider: Callable[[], float] | None) -> None:
    global _time_provider
    _time_provider = provider
    _limiters.clear()


def reset_rate_limiter_state() -> None:
    # Reset counters and cached connections for deterministic test setup.
    global _memory_store, _redis_pool, _redis_store, _redis_loop, _time_provider
    _memory_store = MemoryWindowStore()
    _limiters.clear()
    _redis_pool = None
    _redis_store = None
    _redis_loop = None
    _time_provider = None
