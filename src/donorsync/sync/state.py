"""
Transient per-run sync state.

Created at run start, mutated by every batch outcome, consulted by the
failure-threshold monitor after each batch, and turned into a SyncResult at
the end of the run.
"""

from __future__ import annotations

import random
import string
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from donorsync.contracts import Provider, RecordKind, SyncError, SyncPhase, SyncResult, SyncStatus

_BASE36 = string.digits + string.ascii_lowercase

# Errors carried on the SyncResult; the run keeps counting past this
MAX_REPORTED_ERRORS = 100


def generate_request_id(
    provider: Provider | str,
    *,
    time_fn: Callable[[], float] | None = None,
    rng: random.Random | None = None,
) -> str:
    """Globally unique run id: ``sync_<provider>_<epoch_ms>_<6 base36 chars>``."""
    now = (time_fn or time.time)()
    source = rng if rng is not None else random
    suffix = "".join(source.choice(_BASE36) for _ in range(6))
    return f"sync_{Provider(provider).value}_{int(now * 1000)}_{suffix}"


@dataclass
class SyncRunState:
    """Counters, phase and ordered errors for one sync run."""

    provider: Provider
    request_id: str = ""
    phase: SyncPhase = SyncPhase.CONSTITUENTS

    total_records: int = 0
    processed_records: int = 0
    failed_records: int = 0
    constituents_synced: int = 0
    donations_synced: int = 0

    current_batch: int = 0
    total_batches: int | None = None  # Unknown for cursor-paged vendors

    errors: list[SyncError] = field(default_factory=list)
    stop_reasons: list[str] = field(default_factory=list)

    started_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.provider = Provider(self.provider)
        if not self.request_id:
            self.request_id = generate_request_id(self.provider)

    @property
    def failure_rate(self) -> float:
        return self.failed_records / self.total_records if self.total_records else 0.0

    def record_success(self, kind: RecordKind, count: int = 1) -> None:
        self.processed_records += count
        if kind == RecordKind.CONSTITUENT:
            self.constituents_synced += count
        else:
            self.donations_synced += count

    def record_failure(
        self,
        message: str,
        *,
        record_id: str | None = None,
        code: str | None = None,
        recoverable: bool = True,
    ) -> SyncError:
        """Count one failed record and append its error."""
        self.processed_records += 1
        self.failed_records += 1
        return self.add_error(message, record_id=record_id, code=code, recoverable=recoverable)

    def add_error(
        self,
        message: str,
        *,
        record_id: str | None = None,
        code: str | None = None,
        recoverable: bool = True,
    ) -> SyncError:
        """Append an error without touching record counters (run-level errors)."""
        error = SyncError(message=message, record_id=record_id, code=code, recoverable=recoverable)
        self.errors.append(error)
        return error

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def to_result(
        self,
        status: SyncStatus,
        *,
        reason: str | None = None,
        rollback_required: bool = False,
    ) -> SyncResult:
        if status == SyncStatus.COMPLETED:
            self.phase = SyncPhase.COMPLETE
        else:
            self.phase = SyncPhase.FAILED
        return SyncResult(
            request_id=self.request_id,
            provider=self.provider,
            status=status,
            reason=reason,
            constituents_synced=self.constituents_synced,
            donations_synced=self.donations_synced,
            records_total=self.total_records,
            records_failed=self.failed_records,
            stop_reasons=list(self.stop_reasons),
            rollback_required=rollback_required,
            errors=self.errors[:MAX_REPORTED_ERRORS],
            duration_ms=self.elapsed_ms(),
        )
