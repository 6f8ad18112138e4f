"""Connectors: the exchange feed and the Prometheus endpoints."""

from marketindexer.connectors.exporter import MetricsExporter
from marketindexer.connectors.metrics_server import MetricsServer

__all__ = [
    "MetricsExporter",
    "MetricsServer",
]
