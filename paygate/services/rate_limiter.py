"""
Rate Limiter - Sliding window limit on resource reveals per principal.

The window lives behind a store so the per-process default can be swapped for
a shared Redis window without touching call sites.
"""

import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final, Protocol
from uuid import uuid4

from redis.asyncio import Redis

from paygate.exceptions import RateLimitExceededError
from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics

logger = get_logger(__name__)

RATE_LIMIT_KEY_PREFIX: Final[str] = "paygate:reveal:"

# Returns {allowed, count, oldest_ms, now_ms}. Timestamps at or before
# now - window fall out of the window.
SLIDING_WINDOW_LUA_SCRIPT: Final[str] = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local member = ARGV[3]

local t = redis.call("TIME")
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

redis.call("ZREMRANGEBYSCORE", key, "-inf", now - window)
local count = redis.call("ZCARD", key)

if count >= limit then
  local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
  return {0, count, tonumber(oldest[2]), now}
end

redis.call("ZADD", key, now, member .. ":" .. now)
redis.call("PEXPIRE", key, window)
return {1, count + 1, 0, now}
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class WindowState:
    """Outcome of one increment-and-check against a window."""

    allowed: bool
    count: int
    oldest_ms: int | None
    now_ms: int


@dataclass(frozen=True)
class RateLimitResult:
    """Accepted request with the room left in the window."""

    limit: int
    remaining: int


class RateLimitStore(Protocol):
    """Backing store for sliding windows."""

    async def increment_and_check(
        self, key: str, window_ms: int, max_requests: int
    ) -> WindowState:
        """
        Record a request under key unless the window is full.

        A rejected request is not recorded.
        """
        ...


class InMemorySlidingWindowStore:
    """
    Per-process window of request timestamps (implements RateLimitStore).

    Keys hold at least one timestamp. Keys whose newest timestamp has left the
    window are dropped in a sweep that runs at most once per window span.
    """

    def __init__(self, clock_ms: Callable[[], int] = _now_ms) -> None:
        self.clock_ms = clock_ms
        self._windows: dict[str, deque[int]] = {}
        self._last_prune_ms: int | None = None

    async def increment_and_check(
        self, key: str, window_ms: int, max_requests: int
    ) -> WindowState:
        now = self.clock_ms()
        window_start = now - window_ms
        if self._last_prune_ms is None or now - self._last_prune_ms >= window_ms:
            self._prune(window_start)
            self._last_prune_ms = now

        timestamps = self._windows.pop(key, None) or deque()
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()

        if len(timestamps) >= max_requests:
            self._windows[key] = timestamps
            return WindowState(
                allowed=False, count=len(timestamps), oldest_ms=timestamps[0], now_ms=now
            )

        timestamps.append(now)
        self._windows[key] = timestamps
        return WindowState(allowed=True, count=len(timestamps), oldest_ms=timestamps[0], now_ms=now)

    def _prune(self, window_start: int) -> None:
        idle = [key for key, timestamps in self._windows.items() if timestamps[-1] <= window_start]
        for key in idle:
            del self._windows[key]
        if idle:
            logger.debug("rate_limit_keys_pruned", count=len(idle), remaining=len(self._windows))


class RedisSlidingWindowStore:
    """Shared window in a Redis sorted set, updated atomically by a Lua script."""

    def __init__(self, client: Redis, key_prefix: str = RATE_LIMIT_KEY_PREFIX) -> None:
        self.client = client
        self.key_prefix = key_prefix
        self._script = client.register_script(SLIDING_WINDOW_LUA_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisSlidingWindowStore":
        return cls(Redis.from_url(redis_url, decode_responses=True))

    async def increment_and_check(
        self, key: str, window_ms: int, max_requests: int
    ) -> WindowState:
        raw = await self._script(
            keys=[f"{self.key_prefix}{key}"],
            args=[window_ms, max_requests, uuid4().hex],
        )
        if not isinstance(raw, list) or len(raw) < 4:
            raise RuntimeError("invalid redis rate limit response")

        allowed = int(raw[0]) == 1
        return WindowState(
            allowed=allowed,
            count=int(raw[1]),
            oldest_ms=None if allowed else int(raw[2]),
            now_ms=int(raw[3]),
        )

    async def close(self) -> None:
        await self.client.aclose()


class RateLimiter:
    """At most max_requests per principal within any window_ms span."""

    def __init__(self, store: RateLimitStore, max_requests: int = 20, window_ms: int = 60_000) -> None:
        if max_requests <= 0 or window_ms <= 0:
            raise ValueError("max_requests and window_ms must be positive")
        self.store = store
        self.max_requests = max_requests
        self.window_ms = window_ms

    async def check(self, principal_id: str) -> RateLimitResult:
        """
        Count one request for principal_id.

        Raises:
            RateLimitExceededError: Window is full; carries seconds until the
                oldest request leaves it
        """
        state = await self.store.increment_and_check(principal_id, self.window_ms, self.max_requests)
        if state.allowed:
            return RateLimitResult(
                limit=self.max_requests, remaining=max(0, self.max_requests - state.count)
            )

        oldest = state.oldest_ms if state.oldest_ms is not None else state.now_ms
        retry_after = max(1, math.ceil((oldest + self.window_ms - state.now_ms) / 1000))
        metrics.record_rate_limited()
        logger.warning(
            "rate_limit_exceeded",
            principal_id=principal_id,
            count=state.count,
            retry_after_seconds=retry_after,
        )
        raise RateLimitExceededError(retry_after)
