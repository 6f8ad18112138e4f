"""
Tests for the Prometheus metrics exporter.

Validates exporter correctness:
- No high-cardinality labels (market, channel, host, ...)
- Every required metric name is exported
- Counters advance by deltas between updates
"""

from __future__ import annotations

import re

from prometheus_client import generate_latest
from prometheus_client.registry import CollectorRegistry

from marketindexer.connectors.coinbase.supervisor import SupervisorMetrics
from marketindexer.connectors.coinbase.types import ConnectionState, StreamMetrics
from marketindexer.connectors.exporter import (
    FORBIDDEN_LABELS,
    REQUIRED_METRIC_NAMES,
    MetricsExporter,
)
from marketindexer.indexer.bulk import BulkIndexerStats


def sample(registry: CollectorRegistry, name: str) -> float:
    value = registry.get_sample_value(name)
    assert value is not None, f"{name} not exported"
    return value


def stream_metrics() -> list[StreamMetrics]:
    return [
        StreamMetrics(
            subscription="BTC-USD/ticker",
            frames_received=10,
            envelopes_indexed=8,
            control_frames_dropped=2,
            read_errors=1,
            state=ConnectionState.STREAMING,
        ),
        StreamMetrics(
            subscription="BTC-USD/level2",
            frames_received=5,
            envelopes_indexed=4,
            control_frames_dropped=1,
            state=ConnectionState.CONNECTING,
        ),
    ]


class TestNoForbiddenLabels:
    """Exported metrics carry no per-market labels."""

    def test_exporter_has_no_forbidden_labels(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(
            stream_metrics=stream_metrics(),
            supervisor_metrics=[SupervisorMetrics(subscription="BTC-USD/ticker", restarts=1)],
            bulk_stats=BulkIndexerStats(flushed=1, succeeded=3),
            bulk_pending=2,
            outstanding_tasks=3,
        )

        output = generate_latest(registry).decode("utf-8")
        found_labels: set[str] = set()
        for match in re.finditer(r"\{([^}]+)\}", output):
            for pair in match.group(1).split(","):
                if "=" in pair:
                    found_labels.add(pair.split("=")[0].strip())

        assert not found_labels & FORBIDDEN_LABELS, output

    def test_forbidden_labels_cover_subscription_dimensions(self) -> None:
        assert {"market", "product_id", "channel", "host", "index"} <= FORBIDDEN_LABELS


class TestRequiredMetricNames:
    """All required metric families are registered."""

    def test_all_required_names_exported(self) -> None:
        registry = CollectorRegistry()
        MetricsExporter(registry=registry)
        output = generate_latest(registry).decode("utf-8")
        exported = {
            line.split("{")[0].split(" ")[0]
            for line in output.splitlines()
            if line and not line.startswith("#")
        }
        missing = REQUIRED_METRIC_NAMES - exported
        assert not missing, f"Missing metrics: {missing}"

    def test_all_names_prefixed(self) -> None:
        assert all(name.startswith("marketindexer_") for name in REQUIRED_METRIC_NAMES)


class TestUpdate:
    """Component counters are synced to Prometheus."""

    def test_stream_metrics_aggregated(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(stream_metrics=stream_metrics())

        assert sample(registry, "marketindexer_stream_frames_received_total") == 15
        assert sample(registry, "marketindexer_stream_envelopes_indexed_total") == 12
        assert sample(registry, "marketindexer_stream_control_frames_dropped_total") == 3
        assert sample(registry, "marketindexer_stream_read_errors_total") == 1
        assert sample(registry, "marketindexer_stream_connections_open") == 1

    def test_counters_advance_by_delta(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)

        exporter.update(bulk_stats=BulkIndexerStats(flushed=2, succeeded=10, failed=1))
        exporter.update(bulk_stats=BulkIndexerStats(flushed=2, succeeded=10, failed=1))
        assert sample(registry, "marketindexer_bulk_flushes_total") == 2
        assert sample(registry, "marketindexer_bulk_documents_succeeded_total") == 10

        exporter.update(bulk_stats=BulkIndexerStats(flushed=5, succeeded=25, failed=1))
        assert sample(registry, "marketindexer_bulk_flushes_total") == 5
        assert sample(registry, "marketindexer_bulk_documents_succeeded_total") == 25
        assert sample(registry, "marketindexer_bulk_documents_failed_total") == 1

    def test_supervisor_restarts_summed(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(
            supervisor_metrics=[
                SupervisorMetrics(subscription="BTC-USD/ticker", restarts=2),
                SupervisorMetrics(subscription="ETH-USD/ticker", restarts=3),
            ]
        )
        assert sample(registry, "marketindexer_supervisor_restarts_total") == 5

    def test_gauges_set(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(bulk_pending=7, outstanding_tasks=4)
        assert sample(registry, "marketindexer_bulk_pending") == 7
        assert sample(registry, "marketindexer_tasks_outstanding") == 4

        exporter.update(bulk_pending=0, outstanding_tasks=0)
        assert sample(registry, "marketindexer_bulk_pending") == 0
        assert sample(registry, "marketindexer_tasks_outstanding") == 0

    def test_reset_counter_tracking(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(bulk_stats=BulkIndexerStats(flushed=3))
        exporter.reset_counter_tracking()
        exporter.update(bulk_stats=BulkIndexerStats(flushed=1))
        # Tracking restarted from zero; the Prometheus counter itself never decreases
        assert sample(registry, "marketindexer_bulk_flushes_total") == 4
