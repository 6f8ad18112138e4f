"""
Types and configuration for the Coinbase Exchange WebSocket feed.

One subscription = one (market, channel) pair = one WebSocket connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ChannelKind(str, Enum):
    """Feed channels the indexer subscribes to."""

    ORDER_BOOK = "level2"  # Order-book snapshots and updates
    TICKER = "ticker"  # Last trade / best bid-ask

    @property
    def document_type(self) -> str:
        """Document-type label used for index operations of this channel."""
        if self == ChannelKind.ORDER_BOOK:
            return "snap-shot"
        return "ticker"


class ConnectionState(str, Enum):
    """WebSocket connection state of a stream task."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    SUBSCRIBING = "SUBSCRIBING"
    STREAMING = "STREAMING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class FaultKind(str, Enum):
    """Why a stream task instance ended unexpectedly."""

    CONNECT = "CONNECT"  # Could not open the WebSocket
    SUBSCRIBE = "SUBSCRIBE"  # Could not send the subscribe frame
    DISCONNECTED = "DISCONNECTED"  # Server closed the connection
    TRANSPORT = "TRANSPORT"  # WebSocket error frame
    UNEXPECTED = "UNEXPECTED"  # Any other exception inside the task


@dataclass(frozen=True)
class Subscription:
    """
    A (market, channel) subscription.

    Attributes:
        market: Product id (e.g., "BTC-USD").
        channel: Feed channel.
    """

    market: str
    channel: ChannelKind

    @property
    def name(self) -> str:
        """Short name for logs and task names, e.g. "BTC-USD/ticker"."""
        return f"{self.market}/{self.channel.value}"

    def subscribe_frame(self) -> dict[str, Any]:
        """Build the subscribe control frame for this subscription."""
        return {
            "type": "subscribe",
            "channels": [
                {
                    "name": self.channel.value,
                    "product_ids": [self.market],
                }
            ],
        }


@dataclass(frozen=True)
class StreamOutcome:
    """
    Result of one stream task run.

    Attributes:
        fault: None when the task stopped cooperatively, otherwise why it failed.
        error: Error message for faults.
    """

    fault: FaultKind | None = None
    error: str | None = None

    @property
    def stopped(self) -> bool:
        return self.fault is None

    @classmethod
    def stop(cls) -> StreamOutcome:
        return cls()

    @classmethod
    def failed(cls, kind: FaultKind, error: str) -> StreamOutcome:
        return cls(fault=kind, error=error)


@dataclass
class FeedConfig:
    """
    Configuration for feed connections.

    Attributes:
        ws_url: WebSocket feed URL.
        read_timeout_s: Deadline for a single read before it is logged and retried.
        heartbeat_s: WebSocket ping interval (aiohttp heartbeat).
        connect_timeout_s: Timeout for the WebSocket handshake.
    """

    ws_url: str = "wss://ws-feed.exchange.coinbase.com"
    read_timeout_s: float = 60.0
    heartbeat_s: float = 30.0
    connect_timeout_s: float = 10.0

    def __post_init__(self) -> None:
        if self.read_timeout_s <= 0:
            raise ValueError(f"read_timeout_s must be > 0, got {self.read_timeout_s}")
        if self.heartbeat_s <= 0:
            raise ValueError(f"heartbeat_s must be > 0, got {self.heartbeat_s}")
        if self.connect_timeout_s <= 0:
            raise ValueError(f"connect_timeout_s must be > 0, got {self.connect_timeout_s}")


@dataclass
class StreamMetrics:
    """
    Counters for one subscription, kept across restarts.

    Attributes:
        subscription: Subscription name.
        frames_received: Total frames read.
        envelopes_indexed: Operations handed to the bulk indexer.
        control_frames_dropped: Frames dropped for missing/zero timestamp.
        read_errors: Reads that timed out or could not be decoded.
        last_frame_ts: Local receive timestamp of the last frame (ms).
        state: Current connection state.
    """

    subscription: str
    frames_received: int = 0
    envelopes_indexed: int = 0
    control_frames_dropped: int = 0
    read_errors: int = 0
    last_frame_ts: int = 0
    state: ConnectionState = ConnectionState.DISCONNECTED
