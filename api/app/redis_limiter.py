"""Sliding window limiters that report limit/remaining/reset for HTTP headers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError

from .guardrails import Clock, RateLimitConfig, RateLimiter, now_ms


@dataclass(frozen=True)
class RateLimitDecision:
    success: bool
    limit: int
    remaining: int
    reset: int  # epoch ms at which the next slot frees up


class RedisSlidingWindowRateLimiter:
    """Distributed sliding window limiter implemented with Redis sorted sets."""

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local counter_key = key .. ':seq'
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. tostring(now_ms - window_ms))
    local current = redis.call('ZCARD', key)
    local allowed = 0
    if current < max_requests then
        local seq = redis.call('INCR', counter_key)
        redis.call('PEXPIRE', counter_key, window_ms)
        redis.call('ZADD', key, now_ms, tostring(now_ms) .. ':' .. tostring(seq))
        redis.call('PEXPIRE', key, window_ms)
        current = current + 1
        allowed = 1
    end
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local oldest_ms = now_ms
    if oldest[2] then
        oldest_ms = tonumber(oldest[2])
    end
    return {allowed, current, oldest_ms}
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "ratelimit",
        clock: Clock = now_ms,
    ) -> None:
        """Keep the client, window configuration and the registered Lua script."""
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._clock = clock
        self._script = client.register_script(self._LUA_SCRIPT)

    def limit(self, key: str) -> RateLimitDecision:
        """Record a request for ``key`` if it fits in the window and report the outcome."""
        now = int(self._clock())
        redis_key = f"{self._key_prefix}:{key}"
        try:
            allowed, current, oldest_ms = self._script(
                keys=[redis_key], args=[self._window_ms, self._max_requests, now]
            )
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command" in message and "eval" in message:
                allowed, current, oldest_ms = self._limit_fallback(redis_key, now)
            else:
                raise
        remaining = max(0, self._max_requests - int(current))
        return RateLimitDecision(
            success=int(allowed) == 1,
            limit=self._max_requests,
            remaining=remaining,
            reset=now if remaining else int(oldest_ms) + self._window_ms,
        )

    def _limit_fallback(self, redis_key: str, now: int) -> tuple[int, int, int]:
        """Plain command sequence used when the server cannot run Lua."""
        self._client.zremrangebyscore(redis_key, "-inf", f"({now - self._window_ms}")
        current = int(self._client.zcard(redis_key))
        allowed = 0
        if current < self._max_requests:
            seq = self._client.incr(f"{redis_key}:seq")
            self._client.pexpire(f"{redis_key}:seq", self._window_ms)
            self._client.zadd(redis_key, {f"{now}:{seq}": now})
            self._client.pexpire(redis_key, self._window_ms)
            current += 1
            allowed = 1
        oldest = self._client.zrange(redis_key, 0, 0, withscores=True)
        oldest_ms = int(oldest[0][1]) if oldest else now
        return allowed, current, oldest_ms


class MemoryRateLimitBackend:
    """Single-process stand-in for the Redis limiter with the same decision shape."""

    def __init__(self, *, max_requests: int, window_seconds: int, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._limiter = RateLimiter(
            RateLimitConfig(max_requests=max_requests, window_ms=window_seconds * 1000),
            clock=clock,
        )

    def limit(self, key: str) -> RateLimitDecision:
        success = self._limiter.acquire(key)
        wait_s = self._limiter.get_time_until_next_slot(key)
        reset = int(self._clock()) + wait_s * 1000
        return RateLimitDecision(
            success=success,
            limit=self._limiter.cfg.max_requests,
            remaining=self._limiter.get_remaining_requests(key),
            reset=reset,
        )


def build_rate_limit_backend(
    redis_url: str | None, *, max_requests: int, window_seconds: int, key_prefix: str
) -> RedisSlidingWindowRateLimiter | MemoryRateLimitBackend:
    """Use Redis when a URL is configured, otherwise keep limits in process memory."""
    if redis_url:
        client = Redis.from_url(redis_url)
        return RedisSlidingWindowRateLimiter(
            client, max_requests=max_requests, window_seconds=window_seconds, key_prefix=key_prefix
        )
    return MemoryRateLimitBackend(max_requests=max_requests, window_seconds=window_seconds)
