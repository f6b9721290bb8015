"""Counter and token stores shared by the rate limiter and CSRF service.

Two interchangeable backends implement :class:`CounterStore`: Redis, which is
authoritative across service instances, and an in-process dictionary that
only approximates global limits. :class:`FailoverStore` combines them so an
unreachable Redis degrades to the local store instead of hanging requests.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from threading import Lock
from typing import Protocol, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from aegis_gateway.core.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]


def _now_ms(clock: Clock) -> int:
    return int(clock() * 1000)


@dataclass(frozen=True)
class CounterState:
    """Value of a counter right after an increment."""

    count: int
    expires_at_ms: int


class CounterStore(Protocol):
    """Atomic counters and expiring values keyed by string."""

    async def increment(self, key: str, window_ms: int) -> CounterState:
        """Increment ``key``; the expiry is only set when the key is created."""

    async def get(self, key: str) -> str | None:
        """Return the current value of ``key`` or None if missing or expired."""

    async def ttl_ms(self, key: str) -> int | None:
        """Return milliseconds until ``key`` expires, or None if missing."""

    async def set_with_expiry(self, key: str, value: str, ttl_ms: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_ms`` milliseconds."""

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """Store ``value`` only if ``key`` holds no live value; return True if stored."""

    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    async def keys(self, prefix: str) -> list[str]:
        """Return the live keys starting with ``prefix``."""


@dataclass
class _Entry:
    value: str
    expires_at_ms: int


class MemoryStore:
    """Lock-protected in-process store with lazy expiry.

    Every mutation happens under a single lock with no awaits in between, so
    concurrent increments on the same key never lose updates.
    """

    PURGE_EVERY = 1_000

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._lock = Lock()
        self._ops = 0

    def _live(self, key: str, now_ms: int) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        # A key lives through its final millisecond, matching Redis PX.
        if entry.expires_at_ms < now_ms:
            self._data.pop(key, None)
            return None
        return entry

    def _tick(self, now_ms: int) -> None:
        self._ops += 1
        if self._ops % self.PURGE_EVERY:
            return
        expired = [key for key, entry in self._data.items() if entry.expires_at_ms < now_ms]
        for key in expired:
            del self._data[key]

    async def increment(self, key: str, window_ms: int) -> CounterState:
        now_ms = _now_ms(self._clock)
        with self._lock:
            self._tick(now_ms)
            entry = self._live(key, now_ms)
            if entry is None:
                entry = _Entry(value="0", expires_at_ms=now_ms + window_ms)
                self._data[key] = entry
            entry.value = str(int(entry.value) + 1)
            return CounterState(count=int(entry.value), expires_at_ms=entry.expires_at_ms)

    async def get(self, key: str) -> str | None:
        now_ms = _now_ms(self._clock)
        with self._lock:
            entry = self._live(key, now_ms)
            return entry.value if entry else None

    async def ttl_ms(self, key: str) -> int | None:
        now_ms = _now_ms(self._clock)
        with self._lock:
            entry = self._live(key, now_ms)
            return entry.expires_at_ms - now_ms if entry else None

    async def set_with_expiry(self, key: str, value: str, ttl_ms: int) -> None:
        now_ms = _now_ms(self._clock)
        with self._lock:
            self._tick(now_ms)
            self._data[key] = _Entry(value=value, expires_at_ms=now_ms + ttl_ms)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        now_ms = _now_ms(self._clock)
        with self._lock:
            self._tick(now_ms)
            if self._live(key, now_ms) is not None:
                return False
            self._data[key] = _Entry(value=value, expires_at_ms=now_ms + ttl_ms)
            return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def keys(self, prefix: str) -> list[str]:
        now_ms = _now_ms(self._clock)
        with self._lock:
            return [
                key
                for key in list(self._data)
                if key.startswith(prefix) and self._live(key, now_ms) is not None
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisStore:
    """Redis-backed store; the source of truth across service instances."""

    def __init__(self, client: aioredis.Redis, clock: Clock = time.time) -> None:
        self._redis = client
        self._clock = clock

    @classmethod
    def from_url(cls, url: str) -> RedisStore:
        """Create a store with a lazily connecting client for ``url``."""
        client = aioredis.from_url(url, decode_responses=True)
        return cls(client)

    async def increment(self, key: str, window_ms: int) -> CounterState:
        # SET NX creates the key with its expiry exactly once per window.
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, nx=True, px=window_ms)
            pipe.incr(key)
            pipe.pttl(key)
            _, count, pttl = await pipe.execute()
        if pttl is None or pttl < 0:
            pttl = window_ms
        return CounterState(count=int(count), expires_at_ms=_now_ms(self._clock) + int(pttl))

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(key)
        return None if value is None else str(value)

    async def ttl_ms(self, key: str) -> int | None:
        pttl = await self._redis.pttl(key)
        if pttl is None or pttl < 0:
            return None
        return int(pttl)

    async def set_with_expiry(self, key: str, value: str, ttl_ms: int) -> None:
        await self._redis.set(key, value, px=ttl_ms)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        return bool(await self._redis.set(key, value, nx=True, px=ttl_ms))

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def keys(self, prefix: str) -> list[str]:
        # Incremental SCAN; glob characters in the prefix are escaped.
        pattern = re.sub(r"([*?\[\]\\])", r"\\\1", prefix) + "*"
        return [str(key) async for key in self._redis.scan_iter(match=pattern, count=500)]

    async def close(self) -> None:
        await self._redis.aclose()


class FailoverStore:
    """Use ``primary`` while it answers in time, ``fallback`` while it does not.

    Every primary call is bounded by ``timeout_seconds``. After a failure the
    store stays on the fallback for ``retry_seconds`` before probing the
    primary again. Fallback counters are local to this instance.
    """

    def __init__(
        self,
        primary: CounterStore,
        fallback: CounterStore,
        *,
        timeout_seconds: float = 0.25,
        retry_seconds: float = 30.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._timeout = timeout_seconds
        self._retry = retry_seconds
        self._clock = clock
        self._degraded_until: float | None = None

    @property
    def degraded(self) -> bool:
        """True while requests are served from the local fallback."""
        return self._degraded_until is not None and self._clock() < self._degraded_until

    async def _call(
        self,
        operation: str,
        primary_call: Callable[[], Awaitable[T]],
        fallback_call: Callable[[], Awaitable[T]],
    ) -> T:
        if self.degraded:
            return await fallback_call()
        try:
            result = await asyncio.wait_for(primary_call(), timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Counter store unavailable during %s (%s); using in-memory fallback for %.0fs",
                operation,
                exc.__class__.__name__,
                self._retry,
            )
            self._degraded_until = self._clock() + self._retry
            return await fallback_call()
        if self._degraded_until is not None:
            logger.info("Counter store recovered; leaving in-memory fallback")
            self._degraded_until = None
        return result

    async def increment(self, key: str, window_ms: int) -> CounterState:
        return await self._call(
            "increment",
            lambda: self._primary.increment(key, window_ms),
            lambda: self._fallback.increment(key, window_ms),
        )

    async def get(self, key: str) -> str | None:
        return await self._call(
            "get", lambda: self._primary.get(key), lambda: self._fallback.get(key)
        )

    async def ttl_ms(self, key: str) -> int | None:
        return await self._call(
            "ttl", lambda: self._primary.ttl_ms(key), lambda: self._fallback.ttl_ms(key)
        )

    async def set_with_expiry(self, key: str, value: str, ttl_ms: int) -> None:
        await self._call(
            "set",
            lambda: self._primary.set_with_expiry(key, value, ttl_ms),
            lambda: self._fallback.set_with_expiry(key, value, ttl_ms),
        )

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        return await self._call(
            "set_if_absent",
            lambda: self._primary.set_if_absent(key, value, ttl_ms),
            lambda: self._fallback.set_if_absent(key, value, ttl_ms),
        )

    async def delete(self, key: str) -> None:
        await self._call(
            "delete", lambda: self._primary.delete(key), lambda: self._fallback.delete(key)
        )

    async def keys(self, prefix: str) -> list[str]:
        return await self._call(
            "keys", lambda: self._primary.keys(prefix), lambda: self._fallback.keys(prefix)
        )

    async def close(self) -> None:
        if isinstance(self._primary, RedisStore):
            await self._primary.close()


def build_store(config: Settings) -> CounterStore:
    """Return the store described by ``config``."""
    fallback = MemoryStore()
    if not config.redis_enabled:
        logger.warning("Redis disabled; rate limits and CSRF tokens are local to this instance")
        return fallback
    return FailoverStore(
        RedisStore.from_url(config.redis_url),
        fallback,
        timeout_seconds=config.redis_timeout_seconds,
        retry_seconds=config.redis_retry_seconds,
    )
