"""Transport-agnostic message and receipt types."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

__all__ = [
    "PipelineMessage",
    "DeliveryReceipt",
    "DecodedRecord",
    "DeliveryCallback",
    "RecordHandler",
    "ErrorCallback",
    "from_consumer_record",
]


@dataclass(frozen=True)
class PipelineMessage:
    """Raw message as read from the log, before decoding."""

    topic: str
    partition: int
    offset: int
    timestamp: int
    key: bytes | None = None
    value: bytes | None = None
    headers: list[tuple[str, bytes]] | None = None


@dataclass(frozen=True)
class DeliveryReceipt:
    """Outcome of one publish: an offset on success, an error on failure."""

    topic: str
    partition: int | None
    key: bytes | None
    offset: int | None = None
    timestamp: int | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class DecodedRecord:
    """
    A decoded record plus where it came from.

    topic/partition/offset are None when the payload was decoded outside a
    subscription (e.g. directly through the codec).
    """

    value: dict[str, Any]
    schema_id: int
    schema_name: str
    topic: str | None = None
    partition: int | None = None
    offset: int | None = None
    key: bytes | None = None
    timestamp: int | None = None


# Handlers may be plain functions or coroutine functions
DeliveryCallback = Callable[[DeliveryReceipt], Awaitable[None] | None]
RecordHandler = Callable[[DecodedRecord], Awaitable[None] | None]
ErrorCallback = Callable[[Exception, PipelineMessage], Awaitable[None] | None]


def from_consumer_record(record) -> PipelineMessage:
    """Convert aiokafka ConsumerRecord to PipelineMessage."""
    headers = None
    if getattr(record, "headers", None):
        headers = [(k, v) for k, v in record.headers]

    return PipelineMessage(
        topic=record.topic,
        partition=record.partition,
        offset=record.offset,
        timestamp=record.timestamp,
        key=record.key,
        value=record.value,
        headers=headers,
    )
