"""Resilience primitives: retry, circuit breaking, pacing, paging limits."""

from donorsync.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerMetrics,
    CircuitBreakerRegistry,
    CircuitState,
)
from donorsync.resilience.fanout import FanOutResult, gather_settled
from donorsync.resilience.pagination import (
    CursorProgressGuard,
    PageStream,
    PaginationDecision,
    safe_max_id,
    should_continue_pagination,
)
from donorsync.resilience.rate_limiter import ProviderPacer, TokenBucket
from donorsync.resilience.retry import (
    RETRY_POLICIES,
    RetryOutcome,
    compute_backoff_delay,
    execute_with_retry,
    execute_with_stats,
)
from donorsync.resilience.threshold import FailureThresholdMonitor, ThresholdDecision
from donorsync.resilience.timeout import call_with_timeout

__all__ = [
    "RETRY_POLICIES",
    "CircuitBreaker",
    "CircuitBreakerMetrics",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CursorProgressGuard",
    "FailureThresholdMonitor",
    "FanOutResult",
    "PageStream",
    "PaginationDecision",
    "ProviderPacer",
    "RetryOutcome",
    "ThresholdDecision",
    "TokenBucket",
    "call_with_timeout",
    "compute_backoff_delay",
    "execute_with_retry",
    "execute_with_stats",
    "gather_settled",
    "safe_max_id",
    "should_continue_pagination",
]
