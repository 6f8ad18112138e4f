"""Coinbase Exchange WebSocket feed connector."""

from marketindexer.connectors.coinbase.stream import (
    StreamConnectError,
    StreamError,
    StreamSubscribeError,
    StreamTask,
)
from marketindexer.connectors.coinbase.supervisor import (
    Supervisor,
    SupervisorMetrics,
    SupervisorState,
)
from marketindexer.connectors.coinbase.types import (
    ChannelKind,
    ConnectionState,
    FaultKind,
    FeedConfig,
    StreamMetrics,
    StreamOutcome,
    Subscription,
)

__all__ = [
    "ChannelKind",
    "ConnectionState",
    "FaultKind",
    "FeedConfig",
    "StreamConnectError",
    "StreamError",
    "StreamMetrics",
    "StreamOutcome",
    "StreamSubscribeError",
    "StreamTask",
    "Subscription",
    "Supervisor",
    "SupervisorMetrics",
    "SupervisorState",
]
