"""
Stream task - one WebSocket connection for one (market, channel) subscription.

Lifecycle of a single instance:
    connect -> send subscribe frame -> read loop -> release

A stream task never reconnects by itself. Connect/subscribe failures are
raised, a lost connection is returned as a FAULTED outcome, and the
Supervisor decides what happens next. Cancelling the lifetime token aborts a
pending handshake or closes the connection, which unblocks a pending read.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

import aiohttp

from marketindexer.connectors.coinbase.types import (
    ConnectionState,
    FaultKind,
    StreamMetrics,
    StreamOutcome,
    Subscription,
)
from marketindexer.contracts.events import EnvelopeDecodeError, IndexOperation, MessageEnvelope

if TYPE_CHECKING:
    from marketindexer.context import PipelineContext

logger = logging.getLogger(__name__)


class StreamError(Exception):
    """Raised when a stream task instance cannot continue."""

    def __init__(self, message: str, kind: FaultKind = FaultKind.UNEXPECTED) -> None:
        super().__init__(message)
        self.kind = kind


class StreamConnectError(StreamError):
    """Raised when the WebSocket connection cannot be opened."""

    def __init__(self, message: str) -> None:
        super().__init__(message, FaultKind.CONNECT)


class StreamSubscribeError(StreamError):
    """Raised when the subscribe frame cannot be sent."""

    def __init__(self, message: str) -> None:
        super().__init__(message, FaultKind.SUBSCRIBE)


class StreamTask:
    """
    Reads one subscription's frames and hands valid ones to the bulk indexer.

    Responsible for:
    - Connection lifecycle of exactly one WebSocket
    - The single subscribe handshake
    - Turning frames into IndexOperations (dropping control frames)
    """

    def __init__(
        self,
        subscription: Subscription,
        context: PipelineContext,
        metrics: StreamMetrics | None = None,
    ) -> None:
        """
        Initialize the stream task.

        Args:
            subscription: The (market, channel) pair this task owns.
            context: Pipeline context (index name, sink, lifetime token).
            metrics: Counters to update; shared across restarts by the Supervisor.
        """
        self._subscription = subscription
        self._context = context
        self._feed = context.feed
        self._metrics = metrics or StreamMetrics(subscription=subscription.name)
        self._doc_type = subscription.channel.document_type

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._connect_task: asyncio.Task[aiohttp.ClientWebSocketResponse] | None = None
        self._closing = False
        self._background_tasks: set[asyncio.Task[None]] = set()

    @property
    def subscription(self) -> Subscription:
        return self._subscription

    @property
    def state(self) -> ConnectionState:
        return self._metrics.state

    @property
    def metrics(self) -> StreamMetrics:
        return self._metrics

    @property
    def closing(self) -> bool:
        return self._closing

    def _log_extra(self, **fields: object) -> dict[str, object]:
        return {
            "market": self._subscription.market,
            "channel": self._subscription.channel.value,
            **fields,
        }

    def _set_state(self, state: ConnectionState) -> None:
        if self._metrics.state != state:
            logger.debug(
                "Stream state changed",
                extra=self._log_extra(old_state=self._metrics.state.value, new_state=state.value),
            )
            self._metrics.state = state

    async def run(self) -> StreamOutcome:
        """
        Connect, subscribe and read until closed or the connection dies.

        Returns:
            StreamOutcome.stop() after a cooperative close, or a FAULTED
            outcome when the server drops the connection.

        Raises:
            StreamConnectError: If the WebSocket cannot be opened.
            StreamSubscribeError: If the subscribe frame cannot be sent.
        """
        remove_callback = self._context.lifetime.add_callback(self.interrupt)
        try:
            if self._closing:
                return StreamOutcome.stop()
            await self._connect()
            if self._closing:
                return StreamOutcome.stop()
            await self._subscribe()
            return await self._read_loop()
        finally:
            remove_callback()
            await self._release()

    def interrupt(self) -> None:
        """
        Request a cooperative stop.

        Safe to call from a cancellation callback: a pending connect is
        cancelled, closing the WebSocket is scheduled, and the pending read
        returns a CLOSING message.
        """
        if self._closing:
            return
        self._closing = True
        self._set_state(ConnectionState.CLOSING)
        if self._connect_task is not None:
            self._connect_task.cancel()
        if self._ws is not None and not self._ws.closed:
            task = asyncio.create_task(self._ws.close())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

    async def _connect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=None,
                connect=self._feed.connect_timeout_s,
                sock_connect=self._feed.connect_timeout_s,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)

        logger.info("Connecting to feed", extra=self._log_extra())
        self._connect_task = asyncio.create_task(self._open_websocket(self._session))
        try:
            self._ws = await self._connect_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._closing and (current is None or current.cancelling() == 0):
                # interrupt() cancelled the handshake; run() returns a stop outcome
                return
            raise
        except (aiohttp.ClientError, OSError, TimeoutError) as e:
            logger.error("Failed to connect", extra=self._log_extra(error=str(e)))
            self._set_state(ConnectionState.DISCONNECTED)
            raise StreamConnectError(f"{self._subscription.name}: connect failed: {e}") from e
        finally:
            self._connect_task = None

    async def _open_websocket(
        self, session: aiohttp.ClientSession
    ) -> aiohttp.ClientWebSocketResponse:
        # The session timeout bounds only the TCP connect; the deadline covers the upgrade too
        async with asyncio.timeout(self._feed.connect_timeout_s):
            return await session.ws_connect(
                self._feed.ws_url,
                heartbeat=self._feed.heartbeat_s,
            )

    async def _subscribe(self) -> None:
        if self._ws is None:
            raise StreamSubscribeError(f"{self._subscription.name}: no connection to subscribe on")

        self._set_state(ConnectionState.SUBSCRIBING)
        try:
            await self._ws.send_json(self._subscription.subscribe_frame())
        except (aiohttp.ClientError, OSError, RuntimeError) as e:
            logger.error("Failed to subscribe", extra=self._log_extra(error=str(e)))
            raise StreamSubscribeError(f"{self._subscription.name}: subscribe failed: {e}") from e

        logger.info("Subscribed", extra=self._log_extra())

    async def _read_loop(self) -> StreamOutcome:
        ws = self._ws
        if ws is None:
            return StreamOutcome.failed(FaultKind.DISCONNECTED, "no connection")

        self._set_state(ConnectionState.STREAMING)
        while not self._closing:
            try:
                msg = await ws.receive(timeout=self._feed.read_timeout_s)
            except TimeoutError:
                self._metrics.read_errors += 1
                logger.warning(
                    "Read timed out",
                    extra=self._log_extra(timeout_s=self._feed.read_timeout_s),
                )
                continue

            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                self._handle_frame(msg.data)

            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                if self._closing:
                    break
                logger.warning(
                    "Feed closed the connection",
                    extra=self._log_extra(close_code=ws.close_code),
                )
                return StreamOutcome.failed(
                    FaultKind.DISCONNECTED,
                    f"connection closed by feed (code={ws.close_code})",
                )

            elif msg.type == aiohttp.WSMsgType.ERROR:
                if self._closing:
                    break
                error = str(ws.exception())
                logger.error("WebSocket error", extra=self._log_extra(error=error))
                return StreamOutcome.failed(FaultKind.TRANSPORT, error)

        return StreamOutcome.stop()

    def _handle_frame(self, data: str | bytes) -> None:
        """Decode one frame and enqueue it if it carries market data."""
        self._metrics.frames_received += 1
        self._metrics.last_frame_ts = int(time.time() * 1000)

        try:
            envelope = MessageEnvelope.from_frame(data)
        except EnvelopeDecodeError as e:
            self._metrics.read_errors += 1
            logger.warning("Failed to decode frame", extra=self._log_extra(error=str(e)))
            return

        if not envelope.is_market_data:
            self._metrics.control_frames_dropped += 1
            if envelope.type == "error":
                logger.warning(
                    "Feed reported an error",
                    extra=self._log_extra(feed_message=envelope.model_extra.get("message")),
                )
            return

        op = IndexOperation(
            index=self._context.index_name,
            doc_type=self._doc_type,
            document=envelope,
        )
        self._context.sink.add(op)
        self._metrics.envelopes_indexed += 1

    async def _release(self) -> None:
        """Close the connection and the session owned by this instance."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None

        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

        self._set_state(ConnectionState.CLOSED)
