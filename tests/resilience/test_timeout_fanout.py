"""
Tests for explicit timeouts and settle-all fan-out.
"""

from __future__ import annotations

import asyncio

import pytest

from donorsync.errors import RequestTimeoutError, TransientError, is_retryable
from donorsync.resilience.fanout import gather_settled
from donorsync.resilience.timeout import call_with_timeout


class TestCallWithTimeout:
    """Tests for call_with_timeout."""

    @pytest.mark.asyncio
    async def test_returns_result_in_time(self) -> None:
        async def quick() -> str:
            return "done"

        assert await call_with_timeout(quick(), 1000) == "done"

    @pytest.mark.asyncio
    async def test_raises_retryable_timeout(self) -> None:
        async def slow() -> str:
            await asyncio.sleep(5)
            return "late"

        with pytest.raises(RequestTimeoutError) as exc_info:
            await call_with_timeout(slow(), 20, "neoncrm fetch", provider="neoncrm")

        error = exc_info.value
        assert str(error) == "neoncrm fetch timed out after 20ms"
        assert error.timeout_ms == 20
        assert error.provider == "neoncrm"
        assert is_retryable(error)

    @pytest.mark.asyncio
    async def test_other_errors_pass_through(self) -> None:
        async def broken() -> str:
            raise TransientError("HTTP 502")

        with pytest.raises(TransientError, match="502"):
            await call_with_timeout(broken(), 1000)


class TestGatherSettled:
    """Tests for gather_settled."""

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self) -> None:
        async def ok(value: int) -> int:
            await asyncio.sleep(0)
            return value

        async def fail() -> int:
            raise TransientError("HTTP 503")

        result = await gather_settled(
            [lambda: ok(1), fail, lambda: ok(3)],
            max_concurrency=2,
        )

        assert result.successes == [1, 3]
        assert result.failure_count == 1
        assert isinstance(result.failures[0], TransientError)
        assert result.total == 3

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self) -> None:
        in_flight = 0
        peak = 0

        async def task() -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        result = await gather_settled([task] * 8, max_concurrency=3)

        assert peak == 3
        assert len(result.successes) == 8

    @pytest.mark.asyncio
    async def test_empty_input(self) -> None:
        result = await gather_settled([])
        assert result.total == 0

    @pytest.mark.asyncio
    async def test_rejects_zero_concurrency(self) -> None:
        with pytest.raises(ValueError, match="max_concurrency"):
            await gather_settled([], max_concurrency=0)
