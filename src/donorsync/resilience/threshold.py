"""
Run-level failure-threshold monitor.

Two independent abort triggers:
1. Failure rate: failed / total > failure_threshold, evaluated only once
   total >= min_records_for_threshold.
2. Consecutive failures: the most recent max_consecutive_failures recorded
   errors are all non-recoverable, regardless of overall rate.

The monitor only decides. Stopping further work and flagging written records
as provisional (rollback) is the caller's job.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from donorsync.config import FailureThresholdConfig

logger = logging.getLogger(__name__)


class RecordErrorLike(Protocol):
    recoverable: bool


class ProgressLike(Protocol):
    """Anything exposing run counters and the ordered error list."""

    total_records: int
    failed_records: int
    errors: Sequence[RecordErrorLike]


@dataclass(frozen=True)
class ThresholdDecision:
    """Result of an abort check."""

    abort: bool
    reason: str | None = None
    rollback_required: bool = False


@dataclass
class FailureThresholdMonitor:
    """Stateless abort policy evaluated against a run's progress."""

    config: FailureThresholdConfig

    def failure_rate(self, progress: ProgressLike) -> float:
        if progress.total_records <= 0:
            return 0.0
        return progress.failed_records / progress.total_records

    def consecutive_unrecoverable(self, progress: ProgressLike) -> int:
        """Length of the trailing run of non-recoverable errors."""
        count = 0
        for error in reversed(progress.errors):
            if error.recoverable:
                break
            count += 1
        return count

    def should_abort(self, progress: ProgressLike) -> ThresholdDecision:
        cfg = self.config

        streak = self.consecutive_unrecoverable(progress)
        if streak >= cfg.max_consecutive_failures:
            return self._abort(f"{streak} consecutive unrecoverable failures")

        if progress.total_records >= cfg.min_records_for_threshold:
            rate = self.failure_rate(progress)
            if rate > cfg.failure_threshold:
                return self._abort(
                    f"Failure rate {rate:.1%} exceeds threshold {cfg.failure_threshold:.1%} "
                    f"({progress.failed_records}/{progress.total_records} records failed)"
                )

        return ThresholdDecision(abort=False)

    def _abort(self, reason: str) -> ThresholdDecision:
        rollback = self.config.enable_rollback_on_threshold
        logger.warning(
            "Failure threshold exceeded",
            extra={"reason": reason, "rollback_required": rollback},
        )
        return ThresholdDecision(abort=True, reason=reason, rollback_required=rollback)
