"""
Bulk indexer - batches index operations and flushes them to the index store.

Flush policy:
- size: the current batch reaches `bulk_actions` operations
- interval: `flush_interval_s` elapsed since the last flush and the batch is not empty

Committed batches go onto a queue drained by `workers` asyncio tasks, so
several bulk requests can be in flight at once. Failed operations are
reported through the after-callback and dropped; nothing is retried.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from marketindexer.contracts.events import FlushResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from marketindexer.contracts.events import IndexOperation
    from marketindexer.indexer.client import BulkResponse

logger = logging.getLogger(__name__)


class BulkClient(Protocol):
    """The part of the index store client the bulk indexer needs."""

    async def bulk(self, operations: Sequence[IndexOperation]) -> BulkResponse: ...

    async def close(self) -> None: ...


# Called after every flush: (batch_id, operations, result, error)
AfterCallback = Callable[[int, "list[IndexOperation]", FlushResult, "Exception | None"], None]


class FlushTrigger:
    """Why a batch was committed."""

    SIZE = "size"
    INTERVAL = "interval"
    FLUSH = "flush"
    CLOSE = "close"


@dataclass
class BulkIndexerConfig:
    """
    Configuration for the bulk indexer.

    Attributes:
        name: Name used in logs.
        workers: Number of concurrent flush workers.
        bulk_actions: Batch size that triggers a flush.
        flush_interval_s: Max seconds between flushes of a non-empty batch (None = size only).
        stats_enabled: Collect BulkIndexerStats.
        backlog_warning_batches: Committed batches waiting for a worker at which
            a backlog warning is logged.
    """

    name: str = "market-indexer"
    workers: int = 1
    bulk_actions: int = 1000
    flush_interval_s: float | None = 5.0
    stats_enabled: bool = False
    backlog_warning_batches: int = 10

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.bulk_actions < 1:
            raise ValueError(f"bulk_actions must be >= 1, got {self.bulk_actions}")
        if self.flush_interval_s is not None and self.flush_interval_s <= 0:
            raise ValueError(f"flush_interval_s must be > 0, got {self.flush_interval_s}")
        if self.backlog_warning_batches < 1:
            raise ValueError(
                f"backlog_warning_batches must be >= 1, got {self.backlog_warning_batches}"
            )


@dataclass
class Batch:
    """A committed batch waiting for a worker."""

    batch_id: int
    operations: list[IndexOperation]
    trigger: str


@dataclass
class WorkerStats:
    """Per-worker counters."""

    worker_id: int
    commits: int = 0


@dataclass
class BulkIndexerStats:
    """
    Bulk indexer counters (collected only when stats are enabled).

    Attributes:
        flushed: Batches sent to the store.
        committed: Operations committed to batches.
        succeeded: Documents accepted by the store.
        failed: Documents rejected or lost with a failed request.
        size_flushes: Batches committed on the size threshold.
        interval_flushes: Batches committed on the flush interval.
        workers: Per-worker counters.
    """

    flushed: int = 0
    committed: int = 0
    succeeded: int = 0
    failed: int = 0
    size_flushes: int = 0
    interval_flushes: int = 0
    workers: list[WorkerStats] = field(default_factory=list)


def log_flush_result(
    batch_id: int,
    operations: list[IndexOperation],
    result: FlushResult,
    error: Exception | None,
) -> None:
    """Default after-callback: log the flush outcome."""
    if error is not None:
        logger.error(
            "Bulk request failed",
            extra={"batch_id": batch_id, "documents": len(operations), "error": str(error)},
        )
        return
    if result.succeeded > 0:
        logger.info("Successfully sent %d documents to the index store", result.succeeded)
    if result.failed > 0:
        logger.info("Errors received %d", result.failed)


class BulkIndexer:
    """
    Shared sink for every stream task.

    add() never awaits, so concurrent stream tasks on the same event loop can
    enqueue without locking.
    """

    def __init__(
        self,
        client: BulkClient,
        config: BulkIndexerConfig | None = None,
        *,
        after: AfterCallback | None = log_flush_result,
    ) -> None:
        """
        Initialize the bulk indexer.

        Args:
            client: Index store client; closed by close().
            config: Flush policy and worker settings.
            after: Callback invoked with every FlushResult.
        """
        self._client = client
        self._config = config or BulkIndexerConfig()
        self._after = after

        self._batch: list[IndexOperation] = []
        self._batch_ids = itertools.count(1)
        self._queue: asyncio.Queue[Batch | None] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._flusher: asyncio.Task[None] | None = None
        self._last_flush = time.monotonic()

        self._started = False
        self._closed = False
        self._stats = BulkIndexerStats(
            workers=[WorkerStats(worker_id=i) for i in range(self._config.workers)]
        )

    @property
    def config(self) -> BulkIndexerConfig:
        return self._config

    @property
    def pending(self) -> int:
        """Operations in the current (uncommitted) batch."""
        return len(self._batch)

    @property
    def in_flight(self) -> int:
        """Committed batches not yet picked up by a worker."""
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> BulkIndexerStats:
        """Get counters. All zero unless stats are enabled."""
        return self._stats

    async def start(self) -> None:
        """Start flush workers and the interval flusher."""
        if self._started:
            return
        self._started = True
        self._last_flush = time.monotonic()

        for worker_id in range(self._config.workers):
            task = asyncio.create_task(
                self._worker(worker_id), name=f"{self._config.name}-worker-{worker_id}"
            )
            self._workers.append(task)

        if self._config.flush_interval_s is not None:
            self._flusher = asyncio.create_task(
                self._interval_flusher(self._config.flush_interval_s),
                name=f"{self._config.name}-flusher",
            )

        logger.info(
            "Bulk indexer started",
            extra={
                "workers": self._config.workers,
                "bulk_actions": self._config.bulk_actions,
                "flush_interval_s": self._config.flush_interval_s,
            },
        )

    def add(self, op: IndexOperation) -> None:
        """Append an operation to the current batch. Never blocks."""
        if self._closed:
            logger.warning("Bulk indexer closed, dropping operation", extra={"index": op.index})
            return

        self._batch.append(op)
        if len(self._batch) >= self._config.bulk_actions:
            self._commit(FlushTrigger.SIZE)

    def _commit(self, trigger: str) -> None:
        """Move the current batch onto the worker queue and reset the counter."""
        self._last_flush = time.monotonic()
        if not self._batch:
            return

        batch = Batch(batch_id=next(self._batch_ids), operations=self._batch, trigger=trigger)
        self._batch = []
        self._queue.put_nowait(batch)
        if self.in_flight == self._config.backlog_warning_batches:
            logger.warning(
                "Bulk requests are falling behind",
                extra={"in_flight": self.in_flight, "workers": self._config.workers},
            )

        if self._config.stats_enabled:
            self._stats.committed += len(batch.operations)
            if trigger == FlushTrigger.SIZE:
                self._stats.size_flushes += 1
            elif trigger == FlushTrigger.INTERVAL:
                self._stats.interval_flushes += 1

        logger.debug(
            "Batch committed",
            extra={"batch_id": batch.batch_id, "documents": len(batch.operations), "trigger": trigger},
        )

    async def flush(self) -> None:
        """Commit the current batch and wait until all committed batches are sent."""
        self._commit(FlushTrigger.FLUSH)
        if self._started:
            await self._queue.join()

    async def close(self) -> None:
        """
        Final flush, stop workers, then release the index store connection.

        Idempotent.
        """
        if self._closed:
            return
        logger.info("Shutting down bulk indexer", extra={"pending": len(self._batch)})

        if not self._started:
            # Nothing would drain the queue otherwise
            await self.start()

        if self._flusher is not None:
            self._flusher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flusher
            self._flusher = None

        self._commit(FlushTrigger.CLOSE)
        self._closed = True
        await self._queue.join()

        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        await self._client.close()
        logger.info("Successfully shut down bulk indexer")

    async def _interval_flusher(self, interval: float) -> None:
        while True:
            delay = self._last_flush + interval - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
                continue
            # Interval elapsed since the last flush: commit whatever is pending
            # (an empty batch just restarts the interval).
            self._commit(FlushTrigger.INTERVAL)

    async def _worker(self, worker_id: int) -> None:
        while True:
            batch = await self._queue.get()
            try:
                if batch is None:
                    return
                await self._send(worker_id, batch)
            finally:
                self._queue.task_done()

    async def _send(self, worker_id: int, batch: Batch) -> None:
        error: Exception | None = None
        try:
            response = await self._client.bulk(batch.operations)
            result = FlushResult(
                succeeded=len(response.succeeded),
                failed=len(response.failed),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            result = FlushResult(succeeded=0, failed=len(batch.operations))

        if self._config.stats_enabled:
            self._stats.flushed += 1
            self._stats.succeeded += result.succeeded
            self._stats.failed += result.failed
            self._stats.workers[worker_id].commits += 1

        if self._after is not None:
            try:
                self._after(batch.batch_id, batch.operations, result, error)
            except Exception:
                logger.exception("Bulk after-callback failed", extra={"batch_id": batch.batch_id})
