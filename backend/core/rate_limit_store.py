"""Fixed-window counter stores for the rate limiter.

- ``RedisCounterStore``: shared across server instances. Every call returns
  ``None`` instead of raising when Redis is unreachable or slow, and the
  caller falls back.
- ``MemoryCounterStore``: in-process fallback. Limits are per instance only.

A window starts with the first hit on a key and lasts ``window_seconds``;
hits taken back with ``decrement`` never push the count below zero.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowCount:
    """Current count of a window and the seconds until it resets."""
    count: int
    reset_after: float


class MemoryCounterStore:
    """Thread-safe in-process fixed window counter."""

    def __init__(self, max_keys: int = 50_000, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        # key -> (count, window_expires_at)
        self._windows: dict[str, tuple[int, float]] = {}
        self._max_keys = max_keys  # Bounded memory
        self._clock = clock

    def increment(self, key: str, window_seconds: int) -> WindowCount:
        now = self._clock()
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or entry[1] <= now:
                expires_at = now + window_seconds
                self._windows[key] = (1, expires_at)
                self._maybe_cleanup(now)
                return WindowCount(1, float(window_seconds))

            count, expires_at = entry
            self._windows[key] = (count + 1, expires_at)
            return WindowCount(count + 1, expires_at - now)

    def decrement(self, key: str) -> WindowCount:
        """Take one hit back out of a live window. Expired windows stay gone."""
        now = self._clock()
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or entry[1] <= now:
                return WindowCount(0, 0.0)
            count, expires_at = entry
            count = max(count - 1, 0)
            self._windows[key] = (count, expires_at)
            return WindowCount(count, expires_at - now)

    def __len__(self) -> int:
        return len(self._windows)

    def _maybe_cleanup(self, now: float) -> None:
        """Drop expired windows, then the oldest 20% if still over the bound."""
        if len(self._windows) <= self._max_keys:
            return
        for k in [k for k, (_, exp) in self._windows.items() if exp <= now]:
            del self._windows[k]
        if len(self._windows) > self._max_keys:
            to_remove = int(self._max_keys * 0.2) or 1
            oldest = sorted(self._windows, key=lambda k: self._windows[k][1])
            for k in oldest[:to_remove]:
                del self._windows[k]


class RedisCounterStore:
    """Shared fixed window counter on Redis (INCR + EXPIRE)."""

    def __init__(
        self,
        client,
        timeout: float = 0.5,
        recovery_seconds: float = 5.0,
        prefix: str = "rl:",
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.client = client
        self.timeout = timeout
        self.prefix = prefix
        self.breaker = breaker or CircuitBreaker("redis-rate-limit", recovery_timeout=recovery_seconds)

    @classmethod
    def from_url(
        cls,
        url: str,
        timeout: float = 0.5,
        recovery_seconds: float = 5.0,
        prefix: str = "rl:",
    ) -> "RedisCounterStore":
        # from_url does not connect; the first command does
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, timeout=timeout, recovery_seconds=recovery_seconds, prefix=prefix)

    @property
    def healthy(self) -> bool:
        return self.breaker.state == "closed"

    async def increment(self, key: str, window_seconds: int) -> Optional[WindowCount]:
        """Count a hit. Returns None when the store is unavailable."""
        return await self._call(self._increment(self.prefix + key, window_seconds))

    async def decrement(self, key: str) -> Optional[WindowCount]:
        """Take one hit back. Returns None when the store is unavailable."""
        return await self._call(self._decrement(self.prefix + key))

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Redis close failed: {e}")

    async def _call(self, coro):
        if not self.breaker.can_execute():
            coro.close()
            return None
        try:
            result = await asyncio.wait_for(coro, timeout=self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self.breaker.record_failure(str(e) or type(e).__name__)
            return None
        self.breaker.record_success()
        return result

    async def _increment(self, key: str, window_seconds: int) -> WindowCount:
        count = int(await self.client.incr(key))
        if count == 1:
            await self.client.expire(key, window_seconds)
            return WindowCount(count, float(window_seconds))

        ttl = await self.client.ttl(key)
        if ttl is None or ttl < 0:
            # Expiry was lost (e.g. crash between INCR and EXPIRE)
            await self.client.expire(key, window_seconds)
            ttl = window_seconds
        return WindowCount(count, float(ttl))

    async def _decrement(self, key: str) -> WindowCount:
        count = int(await self.client.decr(key))
        if count < 0:
            # The window expired before the response finished; DECR recreated it
            await self.client.delete(key)
            return WindowCount(0, 0.0)
        ttl = await self.client.ttl(key)
        return WindowCount(count, float(max(ttl or 0, 0)))
