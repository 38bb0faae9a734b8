"""
Prometheus metrics exporter for the sync engine.

Exports low-cardinality metrics only. Provider (a bounded enum) is allowed as
a label on run-level counters; record ids, request ids and anything derived
from vendor data never are.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from donorsync.contracts import SyncResult
    from donorsync.resilience.circuit_breaker import CircuitBreakerRegistry


# Labels that would cause cardinality explosion or leak data
FORBIDDEN_LABELS = frozenset(
    {
        "request_id",
        "record_id",
        "external_id",
        "user_id",
        "endpoint",
        "path",
        "query",
        "ip",
        "email",
        "token",
    }
)

# Exposed metric names (counters get the _total suffix from prometheus_client)
REQUIRED_METRIC_NAMES = frozenset(
    {
        "donorsync_cb_transitions_to_open_total",
        "donorsync_cb_open_circuits",
        "donorsync_sync_records_processed_total",
        "donorsync_sync_records_failed_total",
        "donorsync_sync_runs_total",
        "donorsync_pagination_stops_total",
    }
)


class MetricsExporter:
    """
    Prometheus exporter for breaker and sync-run metrics.

    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update_breakers(breaker_registry)
        exporter.record_result(sync_result)
        # generate_latest(registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """
        Initialize metrics exporter.

        Args:
            registry: Prometheus CollectorRegistry. If None, a private one is created.
        """
        self._registry = registry or CollectorRegistry()

        # === Circuit breaker metrics (donorsync_cb_*) ===
        self._cb_transitions_to_open = Counter(
            "donorsync_cb_transitions_to_open",
            "Number of circuit breaker transitions into OPEN across all services",
            registry=self._registry,
        )
        self._cb_open_circuits = Gauge(
            "donorsync_cb_open_circuits",
            "Number of services whose circuit breaker is currently OPEN",
            registry=self._registry,
        )

        # === Sync run metrics (donorsync_sync_*) ===
        self._records_processed = Counter(
            "donorsync_sync_records_processed",
            "Records normalized and written",
            ["provider"],
            registry=self._registry,
        )
        self._records_failed = Counter(
            "donorsync_sync_records_failed",
            "Records that failed to normalize or write",
            ["provider"],
            registry=self._registry,
        )
        self._runs = Counter(
            "donorsync_sync_runs",
            "Finished sync runs by outcome",
            ["provider", "status"],
            registry=self._registry,
        )
        self._pagination_stops = Counter(
            "donorsync_pagination_stops",
            "Paging loops stopped by a safety ceiling or a stalled cursor",
            ["provider"],
            registry=self._registry,
        )

        # Track last seen values for counter increments (counters are monotonic)
        self._last_cb_transitions_to_open = 0

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus CollectorRegistry."""
        return self._registry

    def update_breakers(self, breakers: CircuitBreakerRegistry) -> None:
        """
        Sync breaker state into Prometheus.

        Call on every scrape or after each run.
        """
        transitions = sum(
            status["transitions_to_open"] for status in breakers.get_all_status().values()
        )
        delta = transitions - self._last_cb_transitions_to_open
        if delta > 0:
            self._cb_transitions_to_open.inc(delta)
        # Never decrease the baseline; a reset registry starts counting again
        self._last_cb_transitions_to_open = max(self._last_cb_transitions_to_open, transitions)

        self._cb_open_circuits.set(len(breakers.open_circuits()))

    def record_result(self, result: SyncResult) -> None:
        """Account one finished sync run."""
        provider = result.provider.value
        self._runs.labels(provider=provider, status=result.status.value).inc()
        if result.records_synced:
            self._records_processed.labels(provider=provider).inc(result.records_synced)
        if result.records_failed:
            self._records_failed.labels(provider=provider).inc(result.records_failed)
        if result.stop_reasons:
            self._pagination_stops.labels(provider=provider).inc(len(result.stop_reasons))
