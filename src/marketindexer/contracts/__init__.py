"""Data contracts for the market indexer pipeline."""

from marketindexer.contracts.events import (
    EnvelopeDecodeError,
    FlushResult,
    IndexOperation,
    MessageEnvelope,
)

__all__ = [
    "EnvelopeDecodeError",
    "FlushResult",
    "IndexOperation",
    "MessageEnvelope",
]
