"""
Data contracts for the market indexer pipeline.

These are the canonical schemas passed between the stream tasks and the
bulk indexer:

- MessageEnvelope: one JSON frame read off the exchange feed
- IndexOperation: one bulk `index` action wrapping a valid envelope
- FlushResult: per-flush success/failure counts
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# Anything at or before this instant counts as a zero timestamp.
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class EnvelopeDecodeError(ValueError):
    """Raised when a frame cannot be decoded into a MessageEnvelope."""


class MessageEnvelope(BaseModel):
    """
    A single frame from the exchange feed.

    Only the fields shared by every channel are typed; channel-specific
    payload fields (price, best_bid, changes, ...) are kept as extras and
    serialized back verbatim.

    Attributes:
        type: Frame type tag (e.g. "ticker", "l2update", "subscriptions").
        time: Exchange timestamp. None for control/ack frames.
        product_id: Market symbol the frame refers to, if any.
        sequence: Exchange sequence number, if any.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    type: str = Field(..., min_length=1, description="Frame type tag")
    time: datetime | None = Field(default=None, description="Exchange timestamp")
    product_id: str | None = Field(default=None, description="Market symbol")
    sequence: int | None = Field(default=None, description="Exchange sequence number")

    @field_validator("time", mode="before")
    @classmethod
    def validate_time(cls, v: Any) -> Any:
        """Treat empty and numeric-zero timestamps as absent."""
        if v is None or v == "" or v == 0 or v == "0":
            return None
        return v

    @property
    def is_market_data(self) -> bool:
        """True if the frame carries a real (non-zero) exchange timestamp."""
        if self.time is None:
            return False
        ts = self.time if self.time.tzinfo else self.time.replace(tzinfo=UTC)
        return ts > _EPOCH

    def to_document(self) -> dict[str, Any]:
        """Render the envelope as an index document."""
        doc = self.model_dump(mode="json")
        for key in ("time", "product_id", "sequence"):
            if doc.get(key) is None:
                doc.pop(key, None)
        return doc

    @classmethod
    def from_frame(cls, data: bytes | str) -> MessageEnvelope:
        """
        Decode a raw feed frame.

        Raises:
            EnvelopeDecodeError: If the frame is not a JSON object or fails validation.
        """
        try:
            decoded = orjson.loads(data)
        except orjson.JSONDecodeError as e:
            raise EnvelopeDecodeError(f"Frame is not valid JSON: {e}") from e
        if not isinstance(decoded, dict):
            raise EnvelopeDecodeError(f"Frame is not a JSON object: {type(decoded).__name__}")
        try:
            return cls.model_validate(decoded)
        except ValidationError as e:
            raise EnvelopeDecodeError(f"Invalid frame: {e.error_count()} validation errors") from e


class IndexOperation(BaseModel):
    """
    A bulk `index` action for one valid envelope.

    Attributes:
        index: Target index name.
        doc_type: Document-type label ("snap-shot" or "ticker").
        document: The envelope to index.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    index: str = Field(..., min_length=1, description="Target index name")
    doc_type: str = Field(..., min_length=1, description="Document-type label")
    document: MessageEnvelope = Field(..., description="Document body")

    def to_bulk_lines(self, *, mapping_types: bool = False) -> tuple[bytes, bytes]:
        """
        Render the action and source lines of an NDJSON bulk body.

        Args:
            mapping_types: Emit the label as `_type` for clusters that still
                support mapping types. Otherwise it is stored in the document
                as `doc_type`.
        """
        meta: dict[str, str] = {"_index": self.index}
        source = self.document.to_document()
        if mapping_types:
            meta["_type"] = self.doc_type
        else:
            source["doc_type"] = self.doc_type
        return orjson.dumps({"index": meta}), orjson.dumps(source)


class FlushResult(BaseModel):
    """Outcome counts of one bulk flush."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    succeeded: int = Field(default=0, ge=0, description="Documents accepted by the store")
    failed: int = Field(default=0, ge=0, description="Documents rejected or not sent")

    @property
    def total(self) -> int:
        return self.succeeded + self.failed
