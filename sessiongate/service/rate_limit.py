from __future__ import annotations

import asyncio
import contextlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import redis.asyncio as aioredis

from sessiongate.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_WINDOW_SECONDS = 60


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def retry_after(self, now: float) -> int:
        return max(0, math.ceil(self.reset_at - now))


@dataclass
class _Window:
    count: int
    reset_at: float


class Limiter(Protocol):
    clock: Callable[[], float]

    async def check(self, key: str, limit: int, window_seconds: int = ...) -> RateLimitResult: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


def _normalize_window(window_seconds: int) -> int:
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            window_seconds=window_seconds,
            default=_DEFAULT_WINDOW_SECONDS,
        )
        return _DEFAULT_WINDOW_SECONDS
    return window_seconds


class RateLimiter:
    """Fixed-window request counter per key, held in process memory.

    This is a soft, single-instance limit: each process counts on its own.
    Expired windows are evicted by ``sweep()``, which ``start()`` schedules
    on an asyncio task.
    """

    def __init__(
        self,
        *,
        sweep_interval_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.clock = clock
        self.sweep_interval_seconds = sweep_interval_seconds
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    async def check(
        self, key: str, limit: int, window_seconds: int = _DEFAULT_WINDOW_SECONDS
    ) -> RateLimitResult:
        window_seconds = _normalize_window(window_seconds)
        now = self.clock()
        if limit <= 0:
            return RateLimitResult(True, limit, 0, now)
        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = _Window(count=1, reset_at=now + window_seconds)
                self._windows[key] = window
                return RateLimitResult(True, limit, limit - 1, window.reset_at)
            if window.count >= limit:
                return RateLimitResult(False, limit, 0, window.reset_at)
            window.count += 1
            return RateLimitResult(True, limit, limit - window.count, window.reset_at)

    def sweep(self) -> int:
        """Drop windows whose reset time has passed. Returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [key for key, w in self._windows.items() if now > w.reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug("rate_limit_swept", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    async def start(self) -> None:
        if self._sweeper is not None or self.sweep_interval_seconds <= 0:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_seconds)
                self.sweep()
        except asyncio.CancelledError:
            logger.info("rate_limit_sweeper_cancelled")
            raise


class RedisRateLimiter:
    """Fixed-window counter in Redis, shared by every process on the same server.

    Uses ``INCR`` + ``EXPIRE`` in one pipeline; the key expiry replaces sweeping.
    """

    def __init__(
        self,
        client,
        *,
        prefix: str = "sessiongate:rate",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.prefix = prefix
        self.clock = clock

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisRateLimiter":
        return cls(
            aioredis.from_url(redis_url, socket_timeout=5.0, socket_connect_timeout=5.0)
        )

    async def check(
        self, key: str, limit: int, window_seconds: int = _DEFAULT_WINDOW_SECONDS
    ) -> RateLimitResult:
        window_seconds = _normalize_window(window_seconds)
        now = self.clock()
        if limit <= 0:
            return RateLimitResult(True, limit, 0, now)
        window_start = int(now // window_seconds) * window_seconds
        redis_key = f"{self.prefix}:{key}:{window_start}"
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.expire(redis_key, window_seconds)
            count, _ = await pipe.execute()
        reset_at = float(window_start + window_seconds)
        count = int(count)
        if count > limit:
            return RateLimitResult(False, limit, 0, reset_at)
        return RateLimitResult(True, limit, limit - count, reset_at)

    def sweep(self) -> int:
        return 0

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        await self.client.aclose()
