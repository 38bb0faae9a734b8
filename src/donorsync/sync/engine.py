"""
Sync engine.

One run pulls constituents, then donations, from a vendor adapter:

    credentials -> for each page: pace -> retry(breaker(timeout(fetch)))
                -> governor check -> normalize -> sink.upsert -> threshold check

Outcomes:
- completed: all pages consumed, or a pagination ceiling stopped paging
  (the stop reason is recorded, it is not an error)
- aborted: the failure-threshold monitor tripped; records already written
  are kept and, with rollback enabled, flagged provisional via the sink
- failed: credentials, auth or network failure that survived retries
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from donorsync.adapters.base import RawProviderRecord, VendorAdapter
from donorsync.config import SyncConfig
from donorsync.contracts import (
    Constituent,
    Donation,
    Provider,
    RecordKind,
    SyncPhase,
    SyncResult,
    SyncStatus,
)
from donorsync.credentials import decode, diagnose
from donorsync.errors import AuthError, remediation_for, sanitize_error_message
from donorsync.logging_config import EventSink, SyncEventLogger
from donorsync.metrics.exporter import MetricsExporter
from donorsync.resilience.circuit_breaker import CircuitBreakerRegistry
from donorsync.resilience.fanout import FanOutResult, gather_settled
from donorsync.resilience.pagination import PageStream
from donorsync.resilience.rate_limiter import ProviderPacer
from donorsync.resilience.retry import SleepFn
from donorsync.resilience.threshold import FailureThresholdMonitor
from donorsync.sync.state import SyncRunState

logger = logging.getLogger(__name__)

CanonicalRecord = Constituent | Donation
AdapterFactory = Callable[[Provider, Mapping[str, Any]], VendorAdapter]

_PHASES: tuple[tuple[RecordKind, SyncPhase], ...] = (
    (RecordKind.CONSTITUENT, SyncPhase.CONSTITUENTS),
    (RecordKind.DONATION, SyncPhase.DONATIONS),
)


class RecordSink(Protocol):
    """External upsert-capable store keyed by ``(provider, external_id)``."""

    async def upsert(self, kind: RecordKind, records: Sequence[CanonicalRecord]) -> None:
        """Insert or update a batch of canonical records."""
        ...

    async def mark_provisional(self, request_id: str) -> None:
        """Flag everything written by ``request_id`` as eligible for rollback."""
        ...


@dataclass
class EngineState:
    """
    Process-lifetime shared state, constructed once and injected.

    Holds the circuit breaker registry, the per-provider pacer and the metrics
    exporter. Per-process best effort only; not a source of truth across
    processes.
    """

    breakers: CircuitBreakerRegistry
    pacer: ProviderPacer
    exporter: MetricsExporter | None = None

    @classmethod
    def create(cls, config: SyncConfig, *, exporter: MetricsExporter | None = None) -> EngineState:
        return cls(
            breakers=CircuitBreakerRegistry(config.breaker, policies=config.breaker_policies),
            pacer=ProviderPacer(config.rate_limit),
            exporter=exporter,
        )

    def health(self) -> dict[str, Any]:
        """Health payload for /healthz: degraded while any circuit is open."""
        open_circuits = self.breakers.open_circuits()
        return {
            "status": "degraded" if open_circuits else "ok",
            "open_circuits": open_circuits,
            "breakers": self.breakers.get_all_status(),
        }


@dataclass(frozen=True)
class SyncJob:
    """One provider sync to run as part of run_many."""

    provider: Provider
    credential_token: str
    sink: RecordSink


class _RunAborted(Exception):
    def __init__(self, reason: str, rollback_required: bool) -> None:
        super().__init__(reason)
        self.reason = reason
        self.rollback_required = rollback_required


@dataclass
class SyncEngine:
    """Runs provider syncs against injected adapters and sinks."""

    adapter_factory: AdapterFactory
    config: SyncConfig = field(default_factory=SyncConfig)
    state: EngineState | None = None
    event_sink: EventSink | None = None
    sleep: SleepFn = asyncio.sleep

    def __post_init__(self) -> None:
        if self.state is None:
            self.state = EngineState.create(self.config)
        self._monitor = FailureThresholdMonitor(self.config.threshold)

    @property
    def engine_state(self) -> EngineState:
        assert self.state is not None
        return self.state

    async def run(
        self,
        provider: Provider | str,
        credential_token: str,
        sink: RecordSink,
    ) -> SyncResult:
        """
        Run one full sync for a provider.

        Never raises for vendor, credential or record problems; the outcome
        and a human-readable reason are reported on the SyncResult. A failing
        adapter factory fails the run; a failing adapter close is only logged.
        """
        p = Provider(provider)
        run = SyncRunState(provider=p)
        events = SyncEventLogger(
            run.request_id,
            enabled=self.config.logging.structured_enabled,
            min_level=self.config.logging.level,
            sink=self.event_sink,
        )
        events.info("Sync started", provider=p.value)

        result = await self._run(p, credential_token, sink, run, events)

        if self.engine_state.exporter is not None:
            self.engine_state.exporter.record_result(result)
            self.engine_state.exporter.update_breakers(self.engine_state.breakers)
        return result

    async def _run(
        self,
        provider: Provider,
        credential_token: str,
        sink: RecordSink,
        run: SyncRunState,
        events: SyncEventLogger,
    ) -> SyncResult:
        credentials = decode(provider, credential_token)
        if credentials is None:
            issue = diagnose(provider, credential_token)
            code = issue.value if issue else "UNDECODABLE"
            reason = f"Invalid stored credentials ({code}). {remediation_for(provider.value)}"
            run.add_error(reason, code="INVALID_CREDENTIALS", recoverable=False)
            events.error("Sync failed", reason=reason)
            return run.to_result(SyncStatus.FAILED, reason=reason)

        adapter: VendorAdapter | None = None
        try:
            adapter = self.adapter_factory(provider, credentials)
            validation = await adapter.validate_credentials(credentials)
            if not validation.unwrap():
                raise AuthError(f"{provider.value} rejected credentials", provider=provider.value)

            for kind, phase in _PHASES:
                run.phase = phase
                await self._sync_kind(adapter, kind, sink, run, events)

        except _RunAborted as abort:
            if abort.rollback_required:
                await self._mark_provisional(sink, run)
            reason = f"Sync aborted: {abort.reason}"
            events.warn(
                "Sync aborted",
                reason=abort.reason,
                records_total=run.total_records,
                records_failed=run.failed_records,
                rollback_required=abort.rollback_required,
            )
            return run.to_result(
                SyncStatus.ABORTED, reason=reason, rollback_required=abort.rollback_required
            )

        except Exception as e:
            reason = self._failure_reason(e)
            run.add_error(reason, code=type(e).__name__, recoverable=False)
            events.error("Sync failed", reason=reason, phase=run.phase.value)
            logger.error(
                "Sync failed",
                extra={"provider": provider.value, "phase": run.phase.value, "error": reason},
            )
            return run.to_result(SyncStatus.FAILED, reason=reason)

        finally:
            if adapter is not None:
                await self._close_adapter(adapter, provider)

        events.info(
            "Sync completed",
            constituents_synced=run.constituents_synced,
            donations_synced=run.donations_synced,
            records_failed=run.failed_records,
            stop_reasons=list(run.stop_reasons),
        )
        return run.to_result(SyncStatus.COMPLETED)

    async def _close_adapter(self, adapter: VendorAdapter, provider: Provider) -> None:
        try:
            await adapter.close()
        except Exception as e:
            logger.warning(
                "Adapter close failed",
                extra={"provider": provider.value, "error": sanitize_error_message(e, 200)},
            )

    async def _mark_provisional(self, sink: RecordSink, run: SyncRunState) -> None:
        try:
            await sink.mark_provisional(run.request_id)
        except Exception as e:
            message = f"Failed to flag records for rollback: {sanitize_error_message(e, 200)}"
            logger.error("Rollback flagging failed", extra={"error": message})
            run.add_error(message, code="ROLLBACK_FLAG_FAILED", recoverable=False)

    @staticmethod
    def _failure_reason(error: Exception) -> str:
        message = sanitize_error_message(error)
        if isinstance(error, AuthError):
            return f"{message}. {error.remediation}"
        return message

    async def _sync_kind(
        self,
        adapter: VendorAdapter,
        kind: RecordKind,
        sink: RecordSink,
        run: SyncRunState,
        events: SyncEventLogger,
    ) -> None:
        page_size = self.config.page_size()

        async def fetch(cursor: Any) -> Any:
            return (await adapter.fetch_page(kind, cursor, page_size)).unwrap()

        service_key = adapter.provider.value
        stream: PageStream[RawProviderRecord] = PageStream(
            fetch,
            service_key=service_key,
            limits=self.config.pagination,
            pacer=self.engine_state.pacer,
            breaker=self.engine_state.breakers.get_or_create(
                service_key, self.config.breaker_for(service_key)
            ),
            retry=self.config.retry,
            timeout_ms=self.config.request_timeout_ms,
            id_cursor=adapter.id_cursor,
            sleep=self.sleep,
        )

        async for batch in stream:
            run.current_batch += 1
            await self._process_batch(adapter, kind, batch, sink, run)
            events.debug(
                "Batch processed",
                kind=kind.value,
                batch=run.current_batch,
                size=len(batch),
                records_total=run.total_records,
                records_failed=run.failed_records,
            )

            decision = self._monitor.should_abort(run)
            if decision.abort:
                raise _RunAborted(
                    decision.reason or "failure threshold exceeded", decision.rollback_required
                )

        if stream.stop_reason is not None:
            run.stop_reasons.append(f"{kind.value}: {stream.stop_reason}")
            events.info("Pagination stopped", kind=kind.value, reason=stream.stop_reason)

    async def _process_batch(
        self,
        adapter: VendorAdapter,
        kind: RecordKind,
        batch: Sequence[RawProviderRecord],
        sink: RecordSink,
        run: SyncRunState,
    ) -> None:
        mapped: list[CanonicalRecord] = []
        for raw in batch:
            run.total_records += 1
            try:
                mapped.append(adapter.map_record(raw))
            except Exception as e:
                run.record_failure(
                    f"Failed to map {kind.value}: {sanitize_error_message(e, 200)}",
                    record_id=adapter.record_id(raw),
                    code="MAPPING_FAILED",
                    recoverable=True,
                )

        if not mapped:
            return

        try:
            await sink.upsert(kind, mapped)
        except Exception as e:
            message = f"Failed to write {kind.value} batch: {sanitize_error_message(e, 200)}"
            logger.warning(
                "Batch write failed",
                extra={"kind": kind.value, "size": len(mapped), "error": message},
            )
            for record in mapped:
                run.record_failure(
                    message, record_id=record.external_id, code="WRITE_FAILED", recoverable=False
                )
            return

        run.record_success(kind, len(mapped))

    async def run_many(
        self,
        jobs: Iterable[SyncJob],
        max_concurrency: int = 3,
    ) -> FanOutResult[SyncResult]:
        """Run several provider syncs concurrently; one failure never cancels the others."""
        return await gather_settled(
            [lambda job=job: self.run(job.provider, job.credential_token, job.sink) for job in jobs],
            max_concurrency,
            name="sync runs",
        )
