"""
Market indexer pipeline - wires the feed connectors to the bulk indexer.

Data flow:
    Supervisor (one per market x channel)
        -> StreamTask (WebSocket read loop)
            -> IndexOperation
                -> BulkIndexer (shared)
                    -> IndexStoreClient (_bulk)

Startup order: index store connection, index bootstrap, bulk indexer,
bulk shutdown task, supervisors. Any failure before the supervisors start
is fatal.

Shutdown order: lifetime token cancelled -> stream connections closed ->
supervisors exit -> bulk indexer final flush and connection release ->
outstanding task count reaches zero.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from marketindexer.connectors.coinbase.supervisor import Supervisor
from marketindexer.connectors.coinbase.types import ChannelKind, ConnectionState, Subscription
from marketindexer.context import PipelineContext
from marketindexer.indexer.bootstrap import ensure_index
from marketindexer.indexer.bulk import BulkIndexer
from marketindexer.indexer.client import IndexStoreClient
from marketindexer.lifecycle import ShutdownCoordinator

if TYPE_CHECKING:
    from marketindexer.config import IndexerConfig
    from marketindexer.connectors.exporter import MetricsExporter
    from marketindexer.lifecycle import TaskRegistration

logger = logging.getLogger(__name__)

BULK_SHUTDOWN_TASK = "bulk-indexer"
METRICS_REPORTER_TASK = "metrics-reporter"


def build_subscriptions(markets: list[str]) -> list[Subscription]:
    """One order-book and one ticker subscription per market."""
    subscriptions: list[Subscription] = []
    for market in markets:
        subscriptions.append(Subscription(market=market, channel=ChannelKind.ORDER_BOOK))
        subscriptions.append(Subscription(market=market, channel=ChannelKind.TICKER))
    return subscriptions


class MarketIndexerPipeline:
    """
    One indexer process: a supervisor per subscription feeding a shared bulk indexer.

    Usage:
        pipeline = MarketIndexerPipeline(config)
        pipeline.coordinator.install_signal_handlers()
        await pipeline.run()  # returns after shutdown has drained
    """

    def __init__(
        self,
        config: IndexerConfig,
        *,
        coordinator: ShutdownCoordinator | None = None,
        client: IndexStoreClient | None = None,
        metrics_exporter: MetricsExporter | None = None,
        metrics_interval_s: float = 5.0,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            config: Validated indexer configuration.
            coordinator: Shutdown coordinator (a new one by default).
            client: Index store client (built from config by default).
            metrics_exporter: Optional Prometheus exporter refreshed by a reporter task.
            metrics_interval_s: Reporter refresh interval.
        """
        self._config = config
        self._coordinator = coordinator or ShutdownCoordinator()
        self._client = client or IndexStoreClient(config.index_store_config())
        self._metrics_exporter = metrics_exporter
        self._metrics_interval_s = metrics_interval_s

        bulk_config = config.bulk_config()
        if metrics_exporter is not None:
            # The exporter reads bulk counters from the stats
            bulk_config.stats_enabled = True
        self._bulk = BulkIndexer(self._client, bulk_config)

        self._context = PipelineContext(
            index_name=config.elastic_index,
            coordinator=self._coordinator,
            sink=self._bulk,
            feed=config.feed_config(),
            restart_backoff_s=config.stream_restart_backoff,
        )
        self._subscriptions = build_subscriptions(config.gdax_markets)
        self._supervisors: list[Supervisor] = []
        self._supervisor_tasks: list[asyncio.Task[None]] = []
        self._aux_tasks: list[asyncio.Task[None]] = []

        self._started = False
        self._start_monotonic = 0.0

    @property
    def coordinator(self) -> ShutdownCoordinator:
        return self._coordinator

    @property
    def context(self) -> PipelineContext:
        return self._context

    @property
    def bulk(self) -> BulkIndexer:
        return self._bulk

    @property
    def client(self) -> IndexStoreClient:
        return self._client

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    @property
    def supervisors(self) -> list[Supervisor]:
        return list(self._supervisors)

    def request_shutdown(self, reason: str = "shutdown request") -> None:
        """Cancel the pipeline's lifetime token."""
        self._coordinator.request_shutdown(reason)

    def get_health_info(self) -> dict[str, Any]:
        """Return pipeline health info for the /healthz endpoint."""
        uptime_s = round(time.monotonic() - self._start_monotonic, 1) if self._started else 0.0
        if not self._started:
            status = "starting"
        elif self._coordinator.lifetime.cancelled:
            status = "stopping"
        else:
            status = "ok"
        streaming = sum(
            1 for s in self._supervisors if s.stream_metrics.state == ConnectionState.STREAMING
        )
        return {
            "status": status,
            "uptime_s": uptime_s,
            "subscriptions": len(self._subscriptions),
            "streams_connected": streaming,
            "outstanding_tasks": self._coordinator.outstanding,
            "bulk_pending": self._bulk.pending,
            "bulk_in_flight": self._bulk.in_flight,
        }

    async def start(self) -> None:
        """
        Connect to the index store, bootstrap the index and launch all tasks.

        Raises:
            IndexStoreConnectionError: If the index store cannot be reached.
            IndexBootstrapError: If the index cannot be checked or created.
        """
        if self._started:
            return

        try:
            await self._client.start()
            await ensure_index(self._client, self._config.elastic_index, self._config.elastic_template)
        except Exception:
            await self._client.close()
            raise

        await self._bulk.start()
        logger.info("Bulk indexer successfully initialized")

        # The bulk shutdown task registers first so the count cannot reach zero
        # before the final flush.
        bulk_registration = self._coordinator.register(BULK_SHUTDOWN_TASK)
        self._aux_tasks.append(
            asyncio.create_task(self._shutdown_bulk(bulk_registration), name=BULK_SHUTDOWN_TASK)
        )

        if self._metrics_exporter is not None:
            reporter_registration = self._coordinator.register(METRICS_REPORTER_TASK)
            self._aux_tasks.append(
                asyncio.create_task(
                    self._report_metrics(reporter_registration), name=METRICS_REPORTER_TASK
                )
            )

        for subscription in self._subscriptions:
            supervisor = Supervisor(subscription, self._context)
            self._supervisors.append(supervisor)
            self._supervisor_tasks.append(
                asyncio.create_task(supervisor.run(), name=f"supervisor-{subscription.name}")
            )
            logger.info(
                "Starting indexer for %s %s",
                "order book" if subscription.channel == ChannelKind.ORDER_BOOK else "ticker",
                subscription.market,
            )

        self._started = True
        self._start_monotonic = time.monotonic()

    async def run(self) -> None:
        """
        Start, run until the lifetime token is cancelled, then drain.

        Tasks still running when `shutdown-timeout` expires are cancelled.
        """
        await self.start()
        await self._coordinator.lifetime.wait()

        timeout = self._config.shutdown_timeout or None
        drained = await self._coordinator.wait_drained(timeout_s=timeout)
        if not drained:
            await self._cancel_remaining()

        self._log_summary()
        logger.info("Shutdown complete")

    async def _cancel_remaining(self) -> None:
        pending = [t for t in (*self._supervisor_tasks, *self._aux_tasks) if not t.done()]
        logger.warning("Cancelling tasks still running after shutdown timeout", extra={"tasks": len(pending)})
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        # The bulk shutdown task may have been cancelled mid-close
        await self._client.close()

    async def _shutdown_bulk(self, registration: TaskRegistration) -> None:
        """Wait for shutdown and the supervisors, then close the bulk indexer."""
        try:
            await self._coordinator.lifetime.wait()
            await asyncio.gather(*self._supervisor_tasks, return_exceptions=True)
            try:
                await self._bulk.close()
            except Exception:
                logger.exception("Error shutting down bulk indexer")
        finally:
            registration.release()

    async def _report_metrics(self, registration: TaskRegistration) -> None:
        """Refresh the Prometheus exporter until shutdown."""
        try:
            while not await self._coordinator.lifetime.sleep(self._metrics_interval_s):
                self.update_metrics()
            self.update_metrics()
        finally:
            registration.release()

    def update_metrics(self) -> None:
        """Push current component counters to the exporter."""
        if self._metrics_exporter is None:
            return
        self._metrics_exporter.update(
            stream_metrics=[s.stream_metrics for s in self._supervisors],
            supervisor_metrics=[s.metrics for s in self._supervisors],
            bulk_stats=self._bulk.stats(),
            bulk_pending=self._bulk.pending,
            outstanding_tasks=self._coordinator.outstanding,
        )

    def _log_summary(self) -> None:
        """Log per-subscription counters and, if enabled, bulk stats."""
        for supervisor in self._supervisors:
            m = supervisor.stream_metrics
            logger.info(
                "Stream summary",
                extra={
                    "subscription_name": m.subscription,
                    "frames_received": m.frames_received,
                    "envelopes_indexed": m.envelopes_indexed,
                    "control_frames_dropped": m.control_frames_dropped,
                    "read_errors": m.read_errors,
                    "restarts": supervisor.metrics.restarts,
                },
            )
        if self._bulk.config.stats_enabled:
            stats = self._bulk.stats()
            logger.info(
                "Bulk indexer summary",
                extra={
                    "flushed": stats.flushed,
                    "committed": stats.committed,
                    "succeeded": stats.succeeded,
                    "failed": stats.failed,
                },
            )
