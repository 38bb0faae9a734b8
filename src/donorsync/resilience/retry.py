"""
Retry with exponential backoff and jitter.

delay(attempt) = min(initial * multiplier^(attempt-1) + jitter, max_delay)
where jitter is uniform in [0, jitter_ratio * base delay]. A server-provided
Retry-After extends the delay, never shortens it.

Terminal errors propagate on the first attempt without sleeping. When retries
are exhausted the last error is re-raised unchanged so callers can still
classify it.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from donorsync.config import RetryConfig
from donorsync.errors import is_retryable, sanitize_error_message

if TYPE_CHECKING:
    from donorsync.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[BaseException, int, int], None]

RETRY_POLICIES: dict[str, RetryConfig] = {
    "default": RetryConfig(),
    "aggressive": RetryConfig(max_retries=5, initial_delay_ms=500, max_delay_ms=60000),
    "quick": RetryConfig(max_retries=2, initial_delay_ms=200, max_delay_ms=2000),
    "none": RetryConfig(max_retries=0, initial_delay_ms=0, max_delay_ms=0),
}


def compute_backoff_delay(
    config: RetryConfig,
    attempt: int,
    *,
    retry_after_ms: int | None = None,
    rng: random.Random | None = None,
) -> int:
    """
    Compute the delay before the retry that follows ``attempt``.

    Args:
        config: Retry configuration.
        attempt: 1-based number of the attempt that just failed.
        retry_after_ms: Server-provided retry delay (Retry-After header).
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds.
    """
    if attempt <= 0:
        return 0

    base_delay = config.initial_delay_ms * (config.multiplier ** (attempt - 1))
    source = rng if rng is not None else random
    jitter = source.uniform(0.0, config.jitter_ratio * base_delay)
    delay = min(base_delay + jitter, config.max_delay_ms)

    if retry_after_ms is not None and retry_after_ms > 0:
        delay = max(delay, retry_after_ms)

    return int(delay)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    name: str = "operation",
    should_retry: Callable[[BaseException], bool] = is_retryable,
    breaker: CircuitBreaker | None = None,
    on_retry: RetryCallback | None = None,
    sleep: SleepFn = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """
    Run ``operation`` with bounded retries.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        config: Retry configuration (defaults to RetryConfig()).
        name: Operation name for logs.
        should_retry: Error classifier; terminal errors propagate immediately.
        breaker: Optional circuit breaker consulted before every attempt.
        on_retry: Callback(error, attempt, delay_ms) invoked before sleeping.
        sleep: Awaitable sleep (injectable for tests).
        rng: Optional seeded RNG for jitter.

    Returns:
        The operation's result.

    Raises:
        The last error, unchanged, once retries are exhausted or on a
        terminal error.
    """
    cfg = config or RetryConfig()
    total_attempts = cfg.max_retries + 1

    for attempt in range(1, total_attempts + 1):
        try:
            if breaker is not None:
                return await breaker.call(operation)
            return await operation()
        except Exception as error:
            if not should_retry(error) or attempt >= total_attempts:
                raise

            delay_ms = compute_backoff_delay(
                cfg,
                attempt,
                retry_after_ms=getattr(error, "retry_after_ms", None),
                rng=rng,
            )
            logger.warning(
                "Retrying %s",
                name,
                extra={
                    "attempt": attempt,
                    "max_retries": cfg.max_retries,
                    "delay_ms": delay_ms,
                    "error": sanitize_error_message(error, max_length=200),
                },
            )
            if on_retry is not None:
                on_retry(error, attempt, delay_ms)
            if delay_ms > 0:
                await sleep(delay_ms / 1000)

    # range() above always returns or raises
    raise AssertionError("unreachable")


@dataclass
class RetryOutcome(Generic[T]):
    """Statistics for one retried operation."""

    success: bool
    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_time_ms: int = 0
    retry_errors: list[BaseException] = field(default_factory=list)


async def execute_with_stats(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    **kwargs: object,
) -> RetryOutcome[T]:
    """Like execute_with_retry, but never raises; returns a RetryOutcome."""
    retry_errors: list[BaseException] = []
    user_callback = kwargs.pop("on_retry", None)

    def _collect(error: BaseException, attempt: int, delay_ms: int) -> None:
        retry_errors.append(error)
        if callable(user_callback):
            user_callback(error, attempt, delay_ms)

    start = time.monotonic()
    try:
        value = await execute_with_retry(operation, config, on_retry=_collect, **kwargs)  # type: ignore[arg-type]
    except Exception as error:
        return RetryOutcome(
            success=False,
            error=error,
            attempts=len(retry_errors) + 1,
            total_time_ms=int((time.monotonic() - start) * 1000),
            retry_errors=retry_errors,
        )
    return RetryOutcome(
        success=True,
        value=value,
        attempts=len(retry_errors) + 1,
        total_time_ms=int((time.monotonic() - start) * 1000),
        retry_errors=retry_errors,
    )
