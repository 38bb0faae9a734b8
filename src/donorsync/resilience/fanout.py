"""
Bounded concurrent fan-out with settle-all semantics.

One task's failure never cancels its siblings; the caller gets every success
(in submission order) and every failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from donorsync.errors import sanitize_error_message

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FanOutResult(Generic[T]):
    """Settled results of a fan-out."""

    successes: list[T] = field(default_factory=list)
    failures: list[Exception] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def total(self) -> int:
        return len(self.successes) + len(self.failures)


async def gather_settled(
    factories: Iterable[Callable[[], Awaitable[T]]],
    max_concurrency: int = 5,
    *,
    name: str = "fan-out",
) -> FanOutResult[T]:
    """
    Run coroutine factories with at most ``max_concurrency`` in flight.

    Args:
        factories: Zero-argument coroutine factories.
        max_concurrency: Upper bound on concurrently running tasks.
        name: Label for logs.

    Returns:
        FanOutResult with successes in submission order and all failures.
    """
    if max_concurrency < 1:
        raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

    semaphore = asyncio.Semaphore(max_concurrency)

    async def _bounded(factory: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await factory()

    settled = await asyncio.gather(
        *(_bounded(factory) for factory in factories),
        return_exceptions=True,
    )

    result: FanOutResult[T] = FanOutResult()
    for outcome in settled:
        if isinstance(outcome, Exception):
            result.failures.append(outcome)
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            result.successes.append(outcome)

    if result.failures:
        logger.warning(
            "Fan-out finished with failures",
            extra={
                "operation": name,
                "succeeded": len(result.successes),
                "failed": len(result.failures),
                "first_error": sanitize_error_message(result.failures[0], max_length=200),
            },
        )
    return result
