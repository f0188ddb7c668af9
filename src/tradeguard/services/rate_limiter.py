from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from time import monotonic
from typing import TypeVar

from tradeguard.config import RateLimitSettings
from tradeguard.obs.metrics import inc_counter, observe_histogram

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_KEY = "general"


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: float = 10.0
    max_per_key: int = 40
    global_ceiling: int = 100
    max_connections: int = 40
    warning_cooldown_seconds: float = 30.0
    buffer_seconds: float = 0.1

    def validate(self) -> None:
        if self.window_seconds <= 0:
            raise ValueError("RateLimitConfig window_seconds must be > 0")
        if self.max_per_key < 1 or self.global_ceiling < 1:
            raise ValueError("RateLimitConfig ceilings must be >= 1")
        if self.max_connections < 1:
            raise ValueError("RateLimitConfig max_connections must be >= 1")
        if self.buffer_seconds < 0 or self.warning_cooldown_seconds < 0:
            raise ValueError("RateLimitConfig buffer and cooldown must be >= 0")

    @classmethod
    def from_settings(cls, settings: RateLimitSettings) -> RateLimitConfig:
        return cls(
            window_seconds=settings.window_ms / 1000.0,
            max_per_key=settings.max_requests_per_method,
            global_ceiling=settings.global_ceiling,
            max_connections=settings.max_concurrent_connections,
            warning_cooldown_seconds=settings.warning_cooldown_ms / 1000.0,
        )


class RateLimiter:
    """Sliding-window admission gate plus a FIFO bound on in-flight operations.

    Every admitted request is recorded in its own key window (``venue:key``
    when a venue is given) and in the global window. Neither window ever holds
    more entries than its ceiling within any ``window_seconds`` span.
    Connection slots are independent of the windows.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] = monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or RateLimitConfig()
        self.config.validate()
        self._clock = clock
        self._sleep = sleep_fn
        self._windows: dict[str, deque[float]] = {}
        self._global: deque[float] = deque()
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._last_warning_at: dict[str, float] = {}
        self._active_connections = 0
        self._slot_waiters: deque[asyncio.Future[None]] = deque()

    @staticmethod
    def window_key(key: str = DEFAULT_KEY, venue: str | None = None) -> str:
        return f"{venue}:{key}" if venue else key

    def _prune(self, window: deque[float], now: float) -> None:
        cutoff = now - self.config.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def _wait_seconds(self, window_key: str, now: float) -> float:
        key_window = self._windows.setdefault(window_key, deque())
        self._prune(key_window, now)
        self._prune(self._global, now)
        wait = 0.0
        for window, ceiling in (
            (key_window, self.config.max_per_key),
            (self._global, self.config.global_ceiling),
        ):
            if len(window) >= ceiling:
                oldest = window[len(window) - ceiling]
                wait = max(
                    wait,
                    self.config.window_seconds - (now - oldest) + self.config.buffer_seconds,
                )
        return max(0.0, wait)

    async def wait_for_rate_limit(self, key: str = DEFAULT_KEY, venue: str | None = None) -> float:
        """Suspend until both windows admit one more request, then record it.

        Returns the number of seconds spent waiting.
        """

        window_key = self.window_key(key, venue)
        lock = self._key_locks.setdefault(window_key, asyncio.Lock())
        waited = 0.0
        async with lock:
            wait = self._wait_seconds(window_key, self._clock())
            if wait > 0:
                self._warn_rate_limited(window_key, wait)
                inc_counter("guard_rate_limit_waits_total", {"key": window_key})
            # other keys can take freed global slots while we sleep, so re-check
            while wait > 0:
                await self._sleep(wait)
                waited += wait
                wait = self._wait_seconds(window_key, self._clock())
            now = self._clock()
            self._windows.setdefault(window_key, deque()).append(now)
            self._global.append(now)
        if waited > 0:
            observe_histogram("guard_rate_limit_wait_seconds", waited, {"key": window_key})
        return waited

    def _warn_rate_limited(self, window_key: str, wait: float) -> None:
        now = self._clock()
        last = self._last_warning_at.get(window_key)
        if last is not None and now - last < self.config.warning_cooldown_seconds:
            return
        self._last_warning_at[window_key] = now
        logger.warning(
            "rate_limit_wait",
            extra={
                "extra": {
                    "key": window_key,
                    "wait_seconds": round(wait, 3),
                    "key_requests": len(self._windows.get(window_key, ())),
                    "global_requests": len(self._global),
                }
            },
        )

    async def acquire_connection_slot(self) -> None:
        if self._active_connections < self.config.max_connections and not self._slot_waiters:
            self._active_connections += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._slot_waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # the slot was handed to us just before cancellation
                self.release_connection_slot()
            else:
                try:
                    self._slot_waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release_connection_slot(self) -> None:
        while self._slot_waiters:
            waiter = self._slot_waiters.popleft()
            if not waiter.done():
                # hand the slot over without decrementing the active count
                waiter.set_result(None)
                return
        self._active_connections = max(0, self._active_connections - 1)

    @asynccontextmanager
    async def connection_slot(self) -> AsyncIterator[None]:
        await self.acquire_connection_slot()
        try:
            yield
        finally:
            self.release_connection_slot()

    async def execute(  # noqa: UP047
        self,
        operation: Callable[[], Awaitable[T]],
        key: str = DEFAULT_KEY,
        venue: str | None = None,
    ) -> T:
        async with self.connection_slot():
            await self.wait_for_rate_limit(key, venue)
            return await operation()

    def is_rate_limited(self, key: str = DEFAULT_KEY, venue: str | None = None) -> bool:
        return self._wait_seconds(self.window_key(key, venue), self._clock()) > 0

    def get_rate_limit_status(self, key: str = DEFAULT_KEY, venue: str | None = None) -> dict:
        window_key = self.window_key(key, venue)
        now = self._clock()
        wait = self._wait_seconds(window_key, now)
        key_window = self._windows.get(window_key, deque())
        oldest = key_window[0] if key_window else None
        return {
            "key": window_key,
            "requests_in_window": len(key_window),
            "limit": self.config.max_per_key,
            "remaining": max(0, self.config.max_per_key - len(key_window)),
            "reset_in_seconds": (
                max(0.0, self.config.window_seconds - (now - oldest)) if oldest is not None else 0.0
            ),
            "rate_limited": wait > 0,
            "wait_seconds": wait,
        }

    def get_rate_limit_stats(self) -> dict:
        now = self._clock()
        self._prune(self._global, now)
        requests_by_key: dict[str, int] = {}
        for window_key, window in self._windows.items():
            self._prune(window, now)
            if window:
                requests_by_key[window_key] = len(window)
        return {
            "active_connections": self._active_connections,
            "queued_connections": sum(1 for waiter in self._slot_waiters if not waiter.done()),
            "max_connections": self.config.max_connections,
            "global_requests": len(self._global),
            "global_ceiling": self.config.global_ceiling,
            "per_key_ceiling": self.config.max_per_key,
            "window_seconds": self.config.window_seconds,
            "requests_by_key": requests_by_key,
        }

    def cleanup(self) -> int:
        """Drop windows that hold no live requests. Returns how many were dropped."""

        now = self._clock()
        self._prune(self._global, now)
        dropped = 0
        for window_key in list(self._windows):
            window = self._windows[window_key]
            self._prune(window, now)
            lock = self._key_locks.get(window_key)
            if window or (lock is not None and lock.locked()):
                continue
            del self._windows[window_key]
            self._key_locks.pop(window_key, None)
            dropped += 1
        cooldown = self.config.warning_cooldown_seconds
        for window_key, warned_at in list(self._last_warning_at.items()):
            if now - warned_at >= cooldown:
                del self._last_warning_at[window_key]
        if dropped:
            logger.debug("rate_limit_cleanup", extra={"extra": {"dropped_windows": dropped}})
        return dropped
