"""
Pagination safety governor and pull-based page stream.

Every paging loop is bounded by three ceilings that are independent of the
vendor's own continuation signal:
- max_iterations: page-fetch calls per run
- max_records: cumulative records pulled per run
- max_empty_batches: consecutive zero-length pages

Checks run in that order; the first ceiling reached wins. A governor stop is
a normal completion, not an error. For ID-cursor vendors the highest ID must
strictly increase after every non-empty page; a cursor that fails to advance
stops the stream the same way.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from donorsync.config import PaginationLimits, RetryConfig
from donorsync.resilience.circuit_breaker import CircuitBreaker
from donorsync.resilience.rate_limiter import ProviderPacer
from donorsync.resilience.retry import SleepFn, execute_with_retry
from donorsync.resilience.timeout import DEFAULT_TIMEOUT_MS, call_with_timeout

logger = logging.getLogger(__name__)

R = TypeVar("R")
I = TypeVar("I")  # noqa: E741


@dataclass(frozen=True)
class PaginationDecision:
    """Result of a governor check."""

    should_continue: bool
    reason: str | None = None


def should_continue_pagination(
    records_fetched: int,
    iterations: int,
    consecutive_empty_batches: int,
    limits: PaginationLimits | None = None,
) -> PaginationDecision:
    """
    Decide whether another page may be fetched.

    Args:
        records_fetched: Records pulled so far in this run.
        iterations: Page fetches performed so far.
        consecutive_empty_batches: Zero-length pages in a row.
        limits: Ceilings (defaults to PaginationLimits()).

    Returns:
        PaginationDecision; ``reason`` is set when paging must stop.
    """
    lim = limits or PaginationLimits()

    if iterations >= lim.max_iterations:
        return PaginationDecision(False, f"Maximum iterations reached ({lim.max_iterations})")
    if records_fetched >= lim.max_records:
        return PaginationDecision(False, f"Maximum records reached ({lim.max_records})")
    if consecutive_empty_batches >= lim.max_empty_batches:
        return PaginationDecision(
            False, f"Too many consecutive empty batches ({lim.max_empty_batches})"
        )
    return PaginationDecision(True)


def safe_max_id(
    items: Iterable[I],
    extractor: Callable[[I], Any],
    fallback: int = 0,
) -> int:
    """
    Highest numeric ID in a batch, or ``fallback`` if none parse.

    Missing, non-numeric and negative IDs are skipped.
    """
    best: int | None = None
    for item in items:
        try:
            value = int(extractor(item))
        except (TypeError, ValueError):
            continue
        if value < 0:
            continue
        if best is None or value > best:
            best = value
    return fallback if best is None else best


@dataclass
class CursorProgressGuard:
    """Tracks the highest ID seen and rejects batches that do not advance it."""

    last_id: int | None = None
    stop_reason: str | None = None

    def advance(self, new_max_id: int | None) -> bool:
        """
        Record a batch's max ID.

        Returns:
            False if the cursor failed to strictly increase.
        """
        if new_max_id is None:
            self.stop_reason = "Cursor did not advance (batch has no readable id)"
            return False
        if self.last_id is not None and new_max_id <= self.last_id:
            self.stop_reason = (
                f"Cursor did not advance (max id {new_max_id} <= previous {self.last_id})"
            )
            return False
        self.last_id = new_max_id
        return True


class PageLike(Protocol[R]):
    """Shape of one fetched page."""

    records: Sequence[R]
    next_cursor: Any
    has_more: bool
    max_id: int | None


class PageStream(Generic[R]):
    """
    Pull-based async iterator yielding one non-empty batch per pull.

    Each pull runs, in order: governor check, pacing, then the fetch wrapped
    in timeout, retry and (optionally) the service's circuit breaker. Empty
    pages are counted and skipped. Fetch errors that survive retry propagate
    to the consumer. Consumers may stop iterating at any point; no further
    pages are requested.
    """

    def __init__(
        self,
        fetch: Callable[[Any], Awaitable[PageLike[R]]],
        *,
        service_key: str,
        limits: PaginationLimits | None = None,
        pacer: ProviderPacer | None = None,
        breaker: CircuitBreaker | None = None,
        retry: RetryConfig | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        id_cursor: bool = False,
        start_cursor: Any = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._fetch = fetch
        self.service_key = service_key
        self.limits = limits or PaginationLimits()
        self._pacer = pacer
        self._breaker = breaker
        self._retry = retry
        self._timeout_ms = timeout_ms
        self._sleep = sleep
        self._guard = CursorProgressGuard() if id_cursor else None

        self.cursor: Any = start_cursor
        self.iterations = 0
        self.records_fetched = 0
        self.consecutive_empty = 0
        self.stop_reason: str | None = None
        self._exhausted = False

    @property
    def stopped_by_governor(self) -> bool:
        return self.stop_reason is not None

    def __aiter__(self) -> PageStream[R]:
        return self

    def _stop(self, reason: str) -> None:
        self.stop_reason = reason
        self._exhausted = True
        logger.info(
            "Pagination stopped",
            extra={
                "service": self.service_key,
                "reason": reason,
                "iterations": self.iterations,
                "records_fetched": self.records_fetched,
            },
        )

    async def _fetch_once(self) -> PageLike[R]:
        cursor = self.cursor
        return await execute_with_retry(
            lambda: call_with_timeout(
                self._fetch(cursor),
                self._timeout_ms,
                f"{self.service_key} page fetch",
            ),
            self._retry,
            name=f"{self.service_key} page fetch",
            breaker=self._breaker,
            sleep=self._sleep,
        )

    async def __anext__(self) -> list[R]:
        while not self._exhausted:
            decision = should_continue_pagination(
                self.records_fetched, self.iterations, self.consecutive_empty, self.limits
            )
            if not decision.should_continue:
                self._stop(decision.reason or "Pagination limit reached")
                break

            if self._pacer is not None:
                await self._pacer.wait(self.service_key)

            self.iterations += 1
            page = await self._fetch_once()
            records = list(page.records)

            if not records:
                self.consecutive_empty += 1
                if not page.has_more:
                    self._exhausted = True
                else:
                    self.cursor = page.next_cursor
                continue

            if self._guard is not None and not self._guard.advance(page.max_id):
                self._stop(self._guard.stop_reason or "Cursor did not advance")
                break

            self.consecutive_empty = 0
            self.records_fetched += len(records)
            self.cursor = page.next_cursor
            if not page.has_more:
                self._exhausted = True
            return records

        raise StopAsyncIteration
