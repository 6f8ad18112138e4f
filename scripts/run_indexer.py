#!/usr/bin/env python3
"""
Market indexer.

Streams Coinbase Exchange order-book and ticker frames for the configured
markets into an Elasticsearch-compatible index.

Usage:
    python -m scripts.run_indexer --config ./config.yml
    python -m scripts.run_indexer --config ./config.yml --verbose --log-format json

Runs until SIGINT/SIGTERM, then drains: every stream connection is closed,
the bulk indexer flushes what it holds, and the process exits.

Exit codes:
    0 = clean shutdown
    1 = configuration, index store connection or index bootstrap failure
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from prometheus_client.registry import CollectorRegistry

from marketindexer.config import ConfigError, IndexerConfig, load_config
from marketindexer.connectors.exporter import MetricsExporter
from marketindexer.connectors.metrics_server import MetricsServer
from marketindexer.indexer.bootstrap import IndexBootstrapError
from marketindexer.indexer.client import IndexStoreError
from marketindexer.logging_config import sanitize_url, setup_logging
from marketindexer.pipeline import MarketIndexerPipeline

logger = logging.getLogger(__name__)


async def run_indexer(config: IndexerConfig) -> int:
    """
    Run the indexer until shutdown.

    Returns:
        Exit code (0 = success).
    """
    exporter: MetricsExporter | None = None
    registry: CollectorRegistry | None = None
    if config.metrics_port > 0:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)

    pipeline = MarketIndexerPipeline(config, metrics_exporter=exporter)

    metrics_server: MetricsServer | None = None
    if registry is not None:
        metrics_server = MetricsServer(
            registry,
            port=config.metrics_port,
            health_fn=pipeline.get_health_info,
        )
        await metrics_server.start()

    pipeline.coordinator.install_signal_handlers()
    try:
        await pipeline.run()
        return 0
    except (IndexStoreError, IndexBootstrapError) as e:
        logger.error("Startup failed: %s", e)
        return 1
    finally:
        pipeline.coordinator.remove_signal_handlers()
        if metrics_server is not None:
            await metrics_server.stop()


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Index Coinbase Exchange market data into Elasticsearch.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yml"),
        help="Path to the YAML configuration (default: ./config.yml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging (overrides log-level)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        default=None,
        help="Log output format (overrides log-format)",
    )

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging(json_format=args.log_format == "json")
        logger.error("Invalid configuration: %s", e)
        return 1

    log_format = args.log_format or config.log_format
    setup_logging(
        level="debug" if args.verbose else config.log_level,
        json_format=log_format == "json",
    )

    logger.info("Starting market indexer")
    logger.info("  Markets: %s", ", ".join(config.gdax_markets))
    logger.info("  Index: %s", config.elastic_index)
    logger.info("  Hosts: %s", ", ".join(sanitize_url(h) for h in config.elastic_hosts))
    logger.info(
        "  Bulk: batch=%d workers=%d flush=%ds",
        config.elastic_client_batch_size,
        config.elastic_client_workers,
        config.elastic_client_flush_interval,
    )

    return asyncio.run(run_indexer(config))


if __name__ == "__main__":
    sys.exit(main())
