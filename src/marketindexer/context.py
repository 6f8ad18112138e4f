"""Pipeline context shared by every stream task and supervisor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from marketindexer.connectors.coinbase.types import FeedConfig

if TYPE_CHECKING:
    from marketindexer.contracts.events import IndexOperation
    from marketindexer.lifecycle import LifetimeToken, ShutdownCoordinator


class OperationSink(Protocol):
    """Anything that accepts index operations without blocking (the bulk indexer)."""

    def add(self, op: IndexOperation) -> None: ...


@dataclass
class PipelineContext:
    """
    Explicit wiring for one pipeline instance.

    Attributes:
        index_name: Index every operation is tagged with.
        coordinator: Shutdown coordinator (lifetime token + task count).
        sink: Shared bulk indexer.
        feed: Feed connection settings.
        restart_backoff_s: Fixed delay before a failed stream is relaunched.
    """

    index_name: str
    coordinator: ShutdownCoordinator
    sink: OperationSink
    feed: FeedConfig = field(default_factory=FeedConfig)
    restart_backoff_s: float = 10.0

    def __post_init__(self) -> None:
        if not self.index_name:
            raise ValueError("index_name must not be empty")
        if self.restart_backoff_s < 0:
            raise ValueError(f"restart_backoff_s must be >= 0, got {self.restart_backoff_s}")

    @property
    def lifetime(self) -> LifetimeToken:
        return self.coordinator.lifetime
