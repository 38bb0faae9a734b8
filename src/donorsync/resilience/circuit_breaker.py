"""
Circuit breaker and per-service breaker registry.

States:
- CLOSED: Normal operation, calls pass through, failures counted
- OPEN: Calls rejected with CircuitOpenError until the cool-down elapses
- HALF_OPEN: A single probe call is let through to test recovery

Transitions:
- CLOSED -> OPEN after N consecutive failures, or when the failure rate in
  the sliding window crosses the policy's rate threshold
- OPEN -> HALF_OPEN once recovery_timeout_ms has elapsed
- HALF_OPEN -> CLOSED on probe success, HALF_OPEN -> OPEN on probe failure

All methods are synchronous and never await, so state updates are atomic
with respect to other cooperative tasks in the same event loop.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from donorsync.config import CircuitBreakerPolicy
from donorsync.errors import CircuitOpenError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateChangeFn = Callable[[str, "CircuitState", "CircuitState"], None]


class CircuitState(str, Enum):
    """Circuit breaker state."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerMetrics:
    """Lifetime counters for observability."""

    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    rejected_requests: int = 0
    transitions_to_open: int = 0
    last_open_duration_ms: int = 0


@dataclass
class CircuitBreaker:
    """
    Health gate for one logical external service.

    ``record_success``/``record_failure`` are called by the caller right after
    each attempt; the breaker never sees call arguments.
    """

    name: str
    policy: CircuitBreakerPolicy = field(default_factory=CircuitBreakerPolicy)

    state: CircuitState = field(default=CircuitState.CLOSED)
    failure_count: int = field(default=0)
    last_failure_time_ms: int = field(default=0)
    opened_at_ms: int = field(default=0)
    half_open_requests: int = field(default=0)
    metrics: CircuitBreakerMetrics = field(default_factory=CircuitBreakerMetrics)

    on_state_change: StateChangeFn | None = field(default=None)

    _open_until_ms: int = field(default=0)
    # (timestamp_ms, failed) outcomes inside the sliding window
    _outcomes: deque[tuple[int, bool]] = field(default_factory=deque)
    _time_fn: Callable[[], int] | None = field(default=None)

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def _transition(self, new_state: CircuitState) -> None:
        if self.state == new_state:
            return
        old_state = self.state
        now_ms = self._now_ms()
        self.state = new_state

        if new_state == CircuitState.OPEN:
            self.opened_at_ms = now_ms
            self.metrics.transitions_to_open += 1
        elif new_state == CircuitState.CLOSED:
            if self.opened_at_ms:
                self.metrics.last_open_duration_ms = now_ms - self.opened_at_ms
            self.opened_at_ms = 0
            self._open_until_ms = 0
            self.failure_count = 0
            self.half_open_requests = 0
            self._outcomes.clear()
        elif new_state == CircuitState.HALF_OPEN:
            self.half_open_requests = 0
            self._open_until_ms = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit state transition",
            extra={"service": self.name, "from": old_state.value, "to": new_state.value},
        )
        if self.on_state_change is not None:
            self.on_state_change(self.name, old_state, new_state)

    def _cooled_down(self, now_ms: int) -> bool:
        if self._open_until_ms > 0:
            return now_ms >= self._open_until_ms
        return now_ms - self.opened_at_ms >= self.policy.recovery_timeout_ms

    def can_execute(self) -> bool:
        """
        Check whether a call may proceed. Claims the probe slot when the
        breaker moves to (or is in) HALF_OPEN.
        """
        self.metrics.total_requests += 1

        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if not self._cooled_down(self._now_ms()):
                self.metrics.rejected_requests += 1
                return False
            self._transition(CircuitState.HALF_OPEN)

        if self.half_open_requests < self.policy.half_open_max_requests:
            self.half_open_requests += 1
            return True

        self.metrics.rejected_requests += 1
        return False

    def record_success(self) -> None:
        """Record a successful call."""
        self.metrics.total_successes += 1
        self._record_outcome(failed=False)
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)
        self.failure_count = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        now_ms = self._now_ms()
        self.metrics.total_failures += 1
        self.last_failure_time_ms = now_ms
        self._record_outcome(failed=True)

        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return

        self.failure_count += 1
        if self.state != CircuitState.CLOSED:
            return

        if self.failure_count >= self.policy.failure_threshold:
            self._transition(CircuitState.OPEN)
        elif self._failure_rate_exceeded():
            self._transition(CircuitState.OPEN)

    def release_half_open_slot(self) -> None:
        """Return a claimed half-open slot without recording an outcome."""
        if self.state == CircuitState.HALF_OPEN and self.half_open_requests > 0:
            self.half_open_requests -= 1

    def _record_outcome(self, *, failed: bool) -> None:
        if self.policy.failure_rate_threshold is None:
            return
        now_ms = self._now_ms()
        self._outcomes.append((now_ms, failed))
        cutoff = now_ms - self.policy.window_ms
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()

    def _failure_rate_exceeded(self) -> bool:
        threshold = self.policy.failure_rate_threshold
        if threshold is None or len(self._outcomes) < self.policy.min_calls_in_window:
            return False
        failures = sum(1 for _, failed in self._outcomes if failed)
        return failures / len(self._outcomes) >= threshold

    def force_open(self, duration_ms: int | None = None) -> None:
        """Force the circuit open, optionally for an explicit duration."""
        self._transition(CircuitState.OPEN)
        now_ms = self._now_ms()
        self.opened_at_ms = now_ms
        self.last_failure_time_ms = now_ms
        self._open_until_ms = now_ms + duration_ms if duration_ms is not None else 0

    def reset(self) -> None:
        """Forcibly return to CLOSED (operator/test use)."""
        self._transition(CircuitState.CLOSED)
        self.failure_count = 0
        self.last_failure_time_ms = 0
        self.half_open_requests = 0
        self._outcomes.clear()

    def time_until_close_ms(self) -> int:
        """Remaining cool-down while OPEN, 0 otherwise."""
        if self.state != CircuitState.OPEN:
            return 0
        now_ms = self._now_ms()
        if self._open_until_ms > 0:
            return max(0, self._open_until_ms - now_ms)
        return max(0, self.policy.recovery_timeout_ms - (now_ms - self.opened_at_ms))

    @property
    def is_open(self) -> bool:
        """True while OPEN and still cooling down."""
        return self.state == CircuitState.OPEN and self.time_until_close_ms() > 0

    def open_error(self) -> CircuitOpenError:
        """Build the fail-fast error for a rejected call."""
        return CircuitOpenError(self.name, retry_after_ms=self.time_until_close_ms())

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run one attempt through the breaker.

        Retryable errors count as failures. Terminal errors (auth, validation)
        mean the service answered, so they count as successes for health
        purposes and then propagate.
        """
        if not self.can_execute():
            raise self.open_error()
        try:
            result = await operation()
        except Exception as error:
            if is_retryable(error):
                self.record_failure()
            else:
                self.record_success()
            raise
        except BaseException:
            # Cancelled: no outcome to record
            self.release_half_open_slot()
            raise
        self.record_success()
        return result

    async def call_with_fallback(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: T,
    ) -> tuple[T, bool]:
        """Run through the breaker; return (fallback, True) if the circuit is open."""
        try:
            return await self.call(operation), False
        except CircuitOpenError:
            logger.info("Skipping call due to open circuit", extra={"service": self.name})
            return fallback, True

    def get_status(self) -> dict[str, Any]:
        """Current breaker status for observability."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time_ms": self.last_failure_time_ms,
            "time_until_close_ms": self.time_until_close_ms(),
            "total_requests": self.metrics.total_requests,
            "total_failures": self.metrics.total_failures,
            "transitions_to_open": self.metrics.transitions_to_open,
        }


class CircuitBreakerRegistry:
    """
    One breaker per logical service name, created lazily.

    A single registry instance is owned by the process-level EngineState and
    injected wherever breakers are needed.
    """

    def __init__(
        self,
        default_policy: CircuitBreakerPolicy | None = None,
        *,
        policies: Mapping[str, CircuitBreakerPolicy] | None = None,
        time_fn: Callable[[], int] | None = None,
        on_state_change: StateChangeFn | None = None,
    ) -> None:
        self._default_policy = default_policy or CircuitBreakerPolicy()
        self._policies = dict(policies or {})
        self._time_fn = time_fn
        self._on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str, policy: CircuitBreakerPolicy | None = None) -> CircuitBreaker:
        """
        Get the breaker for ``name``, creating it on first use.

        A new breaker takes ``policy`` if given, else the per-service policy
        registered for ``name``, else the registry default.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=name,
                policy=policy or self._policies.get(name) or self._default_policy,
                on_state_change=self._on_state_change,
                _time_fn=self._time_fn,
            )
            self._breakers[name] = breaker
            logger.debug("Created circuit breaker", extra={"service": name})
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def names(self) -> list[str]:
        return sorted(self._breakers)

    def reset(self, name: str) -> bool:
        """Reset one breaker. Returns False if it does not exist."""
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
        logger.info("All circuit breakers reset")

    def open_circuits(self) -> list[str]:
        """Names of breakers currently rejecting calls."""
        return sorted(name for name, breaker in self._breakers.items() if breaker.is_open)

    def has_open_circuits(self) -> bool:
        return bool(self.open_circuits())

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in sorted(self._breakers.items())}

    def __len__(self) -> int:
        return len(self._breakers)
