"""
Prometheus metrics exporter for the market indexer.

Exports low-cardinality metrics only: no market, channel or host labels.
Components keep plain counters in their own metrics dataclasses; update()
syncs them to Prometheus (counters advance by the delta since the last sync).
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

from marketindexer.connectors.coinbase.types import ConnectionState

if TYPE_CHECKING:
    from marketindexer.connectors.coinbase.supervisor import SupervisorMetrics
    from marketindexer.connectors.coinbase.types import StreamMetrics
    from marketindexer.indexer.bulk import BulkIndexerStats


# Labels that would explode cardinality
FORBIDDEN_LABELS = frozenset(
    {
        "market",
        "product_id",
        "channel",
        "subscription",
        "host",
        "index",
        "batch_id",
    }
)


class MetricsExporter:
    """
    Prometheus metrics exporter for the indexer pipeline.

    Metric families:
    - marketindexer_stream_*     : aggregated stream task counters
    - marketindexer_supervisor_* : restarts
    - marketindexer_bulk_*       : bulk indexer flushes and documents
    - marketindexer_tasks_*      : shutdown coordinator

    Usage:
        exporter = MetricsExporter()
        exporter.update(stream_metrics=[...], supervisor_metrics=[...], bulk_stats=stats)
        # generate_latest(exporter.registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """
        Initialize metrics exporter.

        Args:
            registry: Prometheus CollectorRegistry. If None, a private one is created.
        """
        self._registry = registry or CollectorRegistry()

        # === Stream metrics ===
        self._stream_frames_received = Counter(
            "marketindexer_stream_frames_received",
            "Total frames read from the exchange feed",
            registry=self._registry,
        )
        self._stream_envelopes_indexed = Counter(
            "marketindexer_stream_envelopes_indexed",
            "Total envelopes handed to the bulk indexer",
            registry=self._registry,
        )
        self._stream_control_frames_dropped = Counter(
            "marketindexer_stream_control_frames_dropped",
            "Total frames dropped for a missing or zero timestamp",
            registry=self._registry,
        )
        self._stream_read_errors = Counter(
            "marketindexer_stream_read_errors",
            "Total reads that timed out or could not be decoded",
            registry=self._registry,
        )
        self._stream_connections_open = Gauge(
            "marketindexer_stream_connections_open",
            "Stream tasks currently streaming",
            registry=self._registry,
        )

        # === Supervisor metrics ===
        self._supervisor_restarts = Counter(
            "marketindexer_supervisor_restarts",
            "Total stream task restarts after a fault",
            registry=self._registry,
        )

        # === Bulk indexer metrics ===
        self._bulk_flushes = Counter(
            "marketindexer_bulk_flushes",
            "Total bulk requests sent to the index store",
            registry=self._registry,
        )
        self._bulk_documents_succeeded = Counter(
            "marketindexer_bulk_documents_succeeded",
            "Total documents accepted by the index store",
            registry=self._registry,
        )
        self._bulk_documents_failed = Counter(
            "marketindexer_bulk_documents_failed",
            "Total documents rejected or lost with a failed request",
            registry=self._registry,
        )
        self._bulk_pending = Gauge(
            "marketindexer_bulk_pending",
            "Operations in the current uncommitted batch",
            registry=self._registry,
        )

        # === Shutdown coordinator ===
        self._tasks_outstanding = Gauge(
            "marketindexer_tasks_outstanding",
            "Registered long-running tasks that have not exited",
            registry=self._registry,
        )

        # Track last seen values for counter increments (counters are monotonic)
        self._last: dict[str, int] = {}

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus CollectorRegistry."""
        return self._registry

    def update(
        self,
        *,
        stream_metrics: Iterable[StreamMetrics] | None = None,
        supervisor_metrics: Iterable[SupervisorMetrics] | None = None,
        bulk_stats: BulkIndexerStats | None = None,
        bulk_pending: int | None = None,
        outstanding_tasks: int | None = None,
    ) -> None:
        """
        Update all metrics from component states.

        Call periodically (the pipeline's reporter task does) to sync
        component counters to Prometheus.
        """
        if stream_metrics is not None:
            self._update_stream_metrics(list(stream_metrics))

        if supervisor_metrics is not None:
            restarts = sum(m.restarts for m in supervisor_metrics)
            self._advance(self._supervisor_restarts, "supervisor_restarts", restarts)

        if bulk_stats is not None:
            self._advance(self._bulk_flushes, "bulk_flushes", bulk_stats.flushed)
            self._advance(self._bulk_documents_succeeded, "bulk_succeeded", bulk_stats.succeeded)
            self._advance(self._bulk_documents_failed, "bulk_failed", bulk_stats.failed)

        if bulk_pending is not None:
            self._bulk_pending.set(bulk_pending)

        if outstanding_tasks is not None:
            self._tasks_outstanding.set(outstanding_tasks)

    def _update_stream_metrics(self, metrics: list[StreamMetrics]) -> None:
        """Aggregate per-subscription counters (no per-market labels)."""
        self._advance(
            self._stream_frames_received,
            "frames_received",
            sum(m.frames_received for m in metrics),
        )
        self._advance(
            self._stream_envelopes_indexed,
            "envelopes_indexed",
            sum(m.envelopes_indexed for m in metrics),
        )
        self._advance(
            self._stream_control_frames_dropped,
            "control_frames_dropped",
            sum(m.control_frames_dropped for m in metrics),
        )
        self._advance(
            self._stream_read_errors,
            "read_errors",
            sum(m.read_errors for m in metrics),
        )
        self._stream_connections_open.set(
            sum(1 for m in metrics if m.state == ConnectionState.STREAMING)
        )

    def _advance(self, counter: Counter, key: str, current: int) -> None:
        """Increment a counter by the delta since the last update."""
        delta = current - self._last.get(key, 0)
        if delta > 0:
            counter.inc(delta)
        self._last[key] = current

    def reset_counter_tracking(self) -> None:
        """
        Reset internal counter tracking.

        Does NOT reset the Prometheus counters themselves.
        """
        self._last.clear()


# Counters are exported with _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "marketindexer_stream_frames_received_total",
        "marketindexer_stream_envelopes_indexed_total",
        "marketindexer_stream_control_frames_dropped_total",
        "marketindexer_stream_read_errors_total",
        "marketindexer_stream_connections_open",
        "marketindexer_supervisor_restarts_total",
        "marketindexer_bulk_flushes_total",
        "marketindexer_bulk_documents_succeeded_total",
        "marketindexer_bulk_documents_failed_total",
        "marketindexer_bulk_pending",
        "marketindexer_tasks_outstanding",
    }
)
