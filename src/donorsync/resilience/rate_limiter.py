"""
Request pacing.

ProviderPacer enforces a minimum delay between consecutive requests to the
same service (static per-provider table). TokenBucket is the explicit
bucket variant: it refills at ``refill_rate`` tokens/second from wall-clock
elapsed time and blocks for ``1/refill_rate`` seconds when empty before
re-checking.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from donorsync.config import RateLimitConfig

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class ProviderPacer:
    """
    Cooperative per-service pacing.

    Concurrent tasks pacing the same key are serialized by a per-key lock, so
    two waiters can never both observe the same "last request" timestamp.
    """

    config: RateLimitConfig = field(default_factory=RateLimitConfig)

    _last_request_ms: dict[str, int] = field(default_factory=dict)
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict)
    _waits: int = field(default=0)
    _time_fn: Callable[[], int] | None = field(default=None)
    _sleep: SleepFn = field(default=asyncio.sleep)

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.monotonic() * 1000)

    def delay(self, service_key: str) -> int:
        """Minimum inter-request delay for a service (ms)."""
        return self.config.delay_for(service_key)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def wait(self, service_key: str) -> int:
        """
        Suspend until at least ``delay(service_key)`` ms have elapsed since the
        previous call for the same key.

        Returns:
            Milliseconds actually waited.
        """
        key = service_key.lower()
        async with self._lock_for(key):
            waited_ms = 0
            last_ms = self._last_request_ms.get(key)
            if last_ms is not None:
                remaining_ms = self.delay(key) - (self._now_ms() - last_ms)
                if remaining_ms > 0:
                    self._waits += 1
                    logger.debug(
                        "Pacing request",
                        extra={"service": key, "wait_ms": remaining_ms},
                    )
                    await self._sleep(remaining_ms / 1000)
                    waited_ms = remaining_ms
            self._last_request_ms[key] = self._now_ms()
            return waited_ms

    def reset(self, service_key: str | None = None) -> None:
        """Forget request history for one key or all keys."""
        if service_key is None:
            self._last_request_ms.clear()
        else:
            self._last_request_ms.pop(service_key.lower(), None)

    def get_status(self) -> dict[str, Any]:
        return {
            "services": sorted(self._last_request_ms),
            "total_waits": self._waits,
        }


@dataclass
class TokenBucket:
    """
    Token bucket limiter.

    Starts full. ``acquire()`` takes one token, sleeping ``1/refill_rate``
    seconds between re-checks while the bucket is empty.
    """

    max_tokens: float = 10.0
    refill_rate: float = 1.0  # Tokens per second

    _tokens: float = field(default=0.0)
    _last_refill_ms: int = field(default=0)
    _time_fn: Callable[[], int] | None = field(default=None)
    _sleep: SleepFn = field(default=asyncio.sleep)

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be > 0, got {self.max_tokens}")
        if self.refill_rate <= 0:
            raise ValueError(f"refill_rate must be > 0, got {self.refill_rate}")
        self._tokens = float(self.max_tokens)
        self._last_refill_ms = self._now_ms()

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.monotonic() * 1000)

    def _refill(self) -> None:
        now_ms = self._now_ms()
        elapsed_ms = now_ms - self._last_refill_ms
        if elapsed_ms <= 0:
            return
        self._tokens = min(self.max_tokens, self._tokens + (elapsed_ms / 1000.0) * self.refill_rate)
        self._last_refill_ms = now_ms

    @property
    def tokens(self) -> float:
        """Currently available tokens (after refill)."""
        self._refill()
        return self._tokens

    def try_acquire(self) -> bool:
        """Take a token without waiting."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    async def acquire(self) -> None:
        """Take a token, waiting for a refill if the bucket is empty."""
        while not self.try_acquire():
            await self._sleep(1.0 / self.refill_rate)
