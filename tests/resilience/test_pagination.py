"""
Tests for the pagination safety governor and PageStream.

Validates:
- Ceiling checks and their order (iterations, records, empty batches)
- Cursor progress guard for ID-cursor vendors
- PageStream pull semantics: pacing, retry, early consumer exit
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from donorsync.adapters.base import Page
from donorsync.config import PaginationLimits, RateLimitConfig, RetryConfig
from donorsync.errors import AuthError, RequestTimeoutError, TransientError
from donorsync.resilience.pagination import (
    CursorProgressGuard,
    PageStream,
    safe_max_id,
    should_continue_pagination,
)
from donorsync.resilience.rate_limiter import ProviderPacer
from donorsync.resilience.retry import RETRY_POLICIES

FAST_RETRY = RetryConfig(max_retries=2, initial_delay_ms=10, max_delay_ms=100, jitter_ratio=0.0)


async def no_sleep(seconds: float) -> None:
    return None


class ScriptedFetch:
    """
    Serves pages by size; offsets are used as cursors.

    After the scripted sizes run out, either keeps returning empty pages that
    claim more data (``endless_empty``) or reports the end.
    """

    def __init__(self, sizes: list[int], *, endless_empty: bool = False) -> None:
        self.sizes = list(sizes)
        self.endless_empty = endless_empty
        self.cursors: list[Any] = []

    async def __call__(self, cursor: Any) -> Page:
        self.cursors.append(cursor)
        index = len(self.cursors) - 1
        offset = int(cursor or 0)
        if index < len(self.sizes):
            size = self.sizes[index]
            has_more = self.endless_empty or index + 1 < len(self.sizes)
        else:
            size, has_more = 0, self.endless_empty
        return Page(
            records=tuple(range(offset, offset + size)),  # type: ignore[arg-type]
            next_cursor=offset + size,
            has_more=has_more,
        )


async def collect(stream: PageStream[Any]) -> list[list[Any]]:
    return [batch async for batch in stream]


class TestShouldContinuePagination:
    """Tests for the governor check."""

    def test_continues_under_limits(self) -> None:
        decision = should_continue_pagination(10, 1, 0)
        assert decision.should_continue
        assert decision.reason is None

    def test_max_iterations(self) -> None:
        decision = should_continue_pagination(0, 1000, 0)
        assert not decision.should_continue
        assert decision.reason == "Maximum iterations reached (1000)"

    def test_max_records(self) -> None:
        decision = should_continue_pagination(50000, 3, 0)
        assert not decision.should_continue
        assert decision.reason == "Maximum records reached (50000)"

    def test_max_empty_batches(self) -> None:
        decision = should_continue_pagination(0, 3, 10)
        assert not decision.should_continue
        assert decision.reason == "Too many consecutive empty batches (10)"

    def test_iterations_checked_first(self) -> None:
        limits = PaginationLimits(max_iterations=5, max_records=5, max_empty_batches=5)
        decision = should_continue_pagination(5, 5, 5, limits)
        assert decision.reason == "Maximum iterations reached (5)"

    def test_records_checked_before_empty_batches(self) -> None:
        limits = PaginationLimits(max_iterations=50, max_records=5, max_empty_batches=5)
        decision = should_continue_pagination(5, 1, 5, limits)
        assert decision.reason == "Maximum records reached (5)"

    def test_invalid_limits_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_empty_batches"):
            PaginationLimits(max_empty_batches=0)


class TestSafeMaxId:
    """Tests for safe_max_id."""

    def test_highest_valid_id(self) -> None:
        items = [{"id": "3"}, {"id": 17}, {"id": "9"}]
        assert safe_max_id(items, lambda item: item["id"]) == 17

    def test_skips_invalid_and_negative(self) -> None:
        items = [{"id": None}, {"id": "abc"}, {"id": -5}, {"id": 4}]
        assert safe_max_id(items, lambda item: item["id"]) == 4

    def test_fallback_when_nothing_parses(self) -> None:
        items = [{"id": "x"}, {}]
        assert safe_max_id(items, lambda item: item.get("id"), fallback=42) == 42


class TestCursorProgressGuard:
    """Tests for CursorProgressGuard."""

    def test_strictly_increasing(self) -> None:
        guard = CursorProgressGuard()
        assert guard.advance(10)
        assert guard.advance(11)
        assert guard.last_id == 11

    def test_rejects_repeat(self) -> None:
        guard = CursorProgressGuard()
        guard.advance(10)
        assert not guard.advance(10)
        assert guard.stop_reason == "Cursor did not advance (max id 10 <= previous 10)"
        assert guard.last_id == 10

    def test_rejects_missing_id(self) -> None:
        guard = CursorProgressGuard()
        assert not guard.advance(None)
        assert guard.stop_reason is not None


class TestPageStream:
    """Tests for PageStream."""

    @pytest.mark.asyncio
    async def test_consumes_until_vendor_reports_end(self) -> None:
        fetch = ScriptedFetch([3, 3, 1])
        stream: PageStream[Any] = PageStream(fetch, service_key="bloomerang")

        batches = await collect(stream)

        assert [len(b) for b in batches] == [3, 3, 1]
        assert fetch.cursors == [None, 3, 6]
        assert stream.stop_reason is None
        assert not stream.stopped_by_governor

    @pytest.mark.asyncio
    async def test_empty_batch_ceiling_stops_endless_paging(self) -> None:
        """Two full pages, then empty pages that keep claiming more data."""
        fetch = ScriptedFetch([100, 100], endless_empty=True)
        stream: PageStream[Any] = PageStream(
            fetch,
            service_key="virtuous",
            limits=PaginationLimits(max_empty_batches=10),
        )

        batches = await collect(stream)

        assert sum(len(b) for b in batches) == 200
        assert stream.records_fetched == 200
        assert stream.iterations == 12
        assert stream.consecutive_empty == 10
        assert stream.stop_reason is not None
        assert "consecutive empty batches" in stream.stop_reason
        assert stream.stopped_by_governor

    @pytest.mark.asyncio
    async def test_non_empty_page_resets_empty_streak(self) -> None:
        fetch = ScriptedFetch([5, 0, 0, 5, 0, 0, 5])
        stream: PageStream[Any] = PageStream(
            fetch, service_key="neoncrm", limits=PaginationLimits(max_empty_batches=3)
        )

        batches = await collect(stream)
        assert len(batches) == 3
        assert stream.stop_reason is None

    @pytest.mark.asyncio
    async def test_trailing_empty_page_ends_quietly(self) -> None:
        fetch = ScriptedFetch([4, 0])
        stream: PageStream[Any] = PageStream(fetch, service_key="neoncrm")

        batches = await collect(stream)
        assert len(batches) == 1
        assert stream.stop_reason is None
        assert stream.iterations == 2

    @pytest.mark.asyncio
    async def test_max_records_ceiling(self) -> None:
        fetch = ScriptedFetch([100] * 10, endless_empty=True)
        stream: PageStream[Any] = PageStream(
            fetch, service_key="salesforce", limits=PaginationLimits(max_records=250)
        )

        batches = await collect(stream)

        assert len(batches) == 3
        assert stream.stop_reason == "Maximum records reached (250)"

    @pytest.mark.asyncio
    async def test_max_iterations_ceiling(self) -> None:
        fetch = ScriptedFetch([1] * 10)
        stream: PageStream[Any] = PageStream(
            fetch, service_key="salesforce", limits=PaginationLimits(max_iterations=4)
        )

        batches = await collect(stream)

        assert len(batches) == 4
        assert len(fetch.cursors) == 4
        assert stream.stop_reason == "Maximum iterations reached (4)"

    @pytest.mark.asyncio
    async def test_consumer_can_stop_early(self) -> None:
        fetch = ScriptedFetch([2] * 10)
        stream: PageStream[Any] = PageStream(fetch, service_key="bloomerang")

        async for _ in stream:
            break

        assert len(fetch.cursors) == 1

    @pytest.mark.asyncio
    async def test_id_cursor_stall_stops_stream(self) -> None:
        pages = [
            Page(records=(1, 2), next_cursor=2, has_more=True, max_id=2),  # type: ignore[arg-type]
            Page(records=(3, 4), next_cursor=4, has_more=True, max_id=4),  # type: ignore[arg-type]
            Page(records=(3, 4), next_cursor=4, has_more=True, max_id=4),  # type: ignore[arg-type]
        ]
        calls = 0

        async def fetch(cursor: Any) -> Page:
            nonlocal calls
            calls += 1
            return pages[min(calls - 1, len(pages) - 1)]

        stream: PageStream[Any] = PageStream(fetch, service_key="everyaction", id_cursor=True)
        batches = await collect(stream)

        assert batches == [[1, 2], [3, 4]]
        assert calls == 3
        assert stream.records_fetched == 4
        assert stream.stop_reason == "Cursor did not advance (max id 4 <= previous 4)"

    @pytest.mark.asyncio
    async def test_transient_fetch_error_is_retried(self) -> None:
        inner = ScriptedFetch([2])
        failures = [TransientError("HTTP 503")]

        async def fetch(cursor: Any) -> Page:
            if failures:
                raise failures.pop()
            return await inner(cursor)

        stream: PageStream[Any] = PageStream(
            fetch, service_key="donorperfect", retry=FAST_RETRY, sleep=no_sleep
        )

        assert await collect(stream) == [[0, 1]]
        assert stream.iterations == 1

    @pytest.mark.asyncio
    async def test_terminal_fetch_error_propagates(self) -> None:
        async def fetch(cursor: Any) -> Page:
            raise AuthError("HTTP 401", provider="blackbaud")

        stream: PageStream[Any] = PageStream(
            fetch, service_key="blackbaud", retry=FAST_RETRY, sleep=no_sleep
        )

        with pytest.raises(AuthError):
            await collect(stream)

    @pytest.mark.asyncio
    async def test_slow_fetch_times_out(self) -> None:
        async def fetch(cursor: Any) -> Page:
            await asyncio.sleep(5)
            return Page()

        stream: PageStream[Any] = PageStream(
            fetch, service_key="virtuous", retry=RETRY_POLICIES["none"], timeout_ms=10
        )

        with pytest.raises(RequestTimeoutError, match="timed out after 10ms"):
            await collect(stream)

    @pytest.mark.asyncio
    async def test_every_pull_is_paced(self) -> None:
        now = {"ms": 0}
        waits: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            waits.append(seconds)
            now["ms"] += int(seconds * 1000)

        pacer = ProviderPacer(
            RateLimitConfig(delays_ms={"bloomerang": 100}),
            _time_fn=lambda: now["ms"],
            _sleep=fake_sleep,
        )
        stream: PageStream[Any] = PageStream(
            ScriptedFetch([1, 1, 1]), service_key="bloomerang", pacer=pacer
        )

        await collect(stream)
        assert waits == [0.1, 0.1]
