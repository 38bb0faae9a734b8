"""Explicit timeouts for externally-bound calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from donorsync.errors import RequestTimeoutError

T = TypeVar("T")

DEFAULT_TIMEOUT_MS = 30000


async def call_with_timeout(
    awaitable: Awaitable[T],
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    operation: str = "request",
    *,
    provider: str | None = None,
) -> T:
    """
    Await ``awaitable`` for at most ``timeout_ms``.

    The underlying task is cancelled on expiry and the timeout is surfaced as
    a (retryable) RequestTimeoutError.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise RequestTimeoutError(
            f"{operation} timed out after {timeout_ms}ms",
            timeout_ms=timeout_ms,
            provider=provider,
        ) from e
