"""Avro record subscriber: poll, decode, hand off, acknowledge."""

import inspect
import logging
import time
from enum import Enum
from typing import Any

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError
from aiokafka.structs import TopicPartition

from avropipe.codec import RecordCodec
from avropipe.common.kafka_config import (
    build_connection_config,
    build_kafka_security_config,
    describe_security_config,
)
from avropipe.common.metrics import (
    batch_processing_duration_seconds,
    record_consumed,
    record_decode_failure,
    update_committed_offset,
    update_connection_status,
)
from avropipe.common.types import (
    DecodedRecord,
    ErrorCallback,
    PipelineMessage,
    RecordHandler,
    from_consumer_record,
)
from config.config import PipelineConfig
from core.auth.credentials import KafkaCredentials
from core.errors.exceptions import (
    InvalidTopic,
    PipelineError,
    RegistryUnavailable,
    TransportDisconnected,
    is_per_record_error,
)
from core.logging import MessageLogContext

logger = logging.getLogger(__name__)


class SubscriberState(Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBED = "subscribed"
    POLLING = "polling"
    PROCESSING = "processing"
    CLOSED = "closed"


def _key_text(key: bytes | None) -> str | None:
    if key is None:
        return None
    return key.decode("utf-8", errors="replace")


class AvroSubscriber:
    """
    Consumes Avro records for one consumer group with at-least-once delivery.

    State machine:
        DISCONNECTED -> SUBSCRIBED -> POLLING <-> PROCESSING
        any -> DISCONNECTED on transport loss or registry outage
        any -> CLOSED on close()

    Offsets are only committed by acknowledge(), after a batch has been
    handled. A systemic failure seeks every partition back to its first
    undelivered offset, so a restart or reconnect redelivers the batch.
    """

    def __init__(
        self,
        config: PipelineConfig,
        codec: RecordCodec,
        credentials: KafkaCredentials | None = None,
        on_error: ErrorCallback | None = None,
        consumer_factory=AIOKafkaConsumer,
    ):
        self.config = config
        self.codec = codec
        self.credentials = credentials
        self.on_error = on_error
        self.group_id = config.kafka.group_id
        self.topics: list[str] = []
        self.state = SubscriberState.DISCONNECTED

        self._consumer_factory = consumer_factory
        self._consumer = None
        self._positions: dict[TopicPartition, int] = {}

    def _build_kafka_config(self) -> dict[str, Any]:
        """Build the AIOKafkaConsumer configuration dict."""
        consumer = self.config.consumer
        kafka_config = build_connection_config(self.config)
        kafka_config.update(
            {
                "group_id": self.group_id,
                "enable_auto_commit": False,
                "auto_offset_reset": consumer.auto_offset_reset,
                "max_poll_records": consumer.max_poll_records,
                "session_timeout_ms": consumer.session_timeout_ms,
                "heartbeat_interval_ms": consumer.heartbeat_interval_ms,
                "max_poll_interval_ms": consumer.max_poll_interval_ms,
            }
        )
        kafka_config.update(build_kafka_security_config(self.config, self.credentials))
        return kafka_config

    async def __aenter__(self) -> "AvroSubscriber":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def subscribe(self, topics: list[str] | None = None) -> None:
        """
        Connect and register interest in ``topics`` (default: the configured topic).

        Raises:
            InvalidTopic: none of the topics exist and allow_missing_topics is off
            TransportDisconnected: the broker could not be reached
        """
        if self.state == SubscriberState.CLOSED:
            raise RuntimeError("Subscriber is closed")

        topics = list(topics or [self.config.kafka.topic])
        if not topics:
            raise ValueError("At least one topic must be specified")

        if self._consumer is not None:
            await self._release()

        kafka_config = self._build_kafka_config()
        logger.info(
            "Starting subscriber",
            extra={
                "topics": topics,
                "group_id": self.group_id,
                "bootstrap_servers": kafka_config["bootstrap_servers"],
                **describe_security_config(kafka_config),
            },
        )

        self._consumer = self._consumer_factory(**kafka_config)
        try:
            await self._consumer.start()
            available = await self._consumer.topics()
        except (KafkaError, OSError) as e:
            await self._release()
            self.state = SubscriberState.DISCONNECTED
            raise TransportDisconnected(f"Cannot connect subscriber: {e}", cause=e) from e

        missing = [t for t in topics if t not in available]
        if missing:
            if len(missing) == len(topics) and not self.config.consumer.allow_missing_topics:
                await self._release()
                self.state = SubscriberState.DISCONNECTED
                raise InvalidTopic(missing)
            logger.warning("Subscribed topic(s) do not exist yet", extra={"topics": missing})

        self._consumer.subscribe(topics=topics)
        self.topics = topics
        self.state = SubscriberState.SUBSCRIBED
        update_connection_status("consumer", connected=True)
        logger.info("Subscriber started successfully", extra={"topics": topics, "group_id": self.group_id})

    def _require_connected(self) -> None:
        if self.state == SubscriberState.CLOSED:
            raise RuntimeError("Subscriber is closed")
        if self._consumer is None or self.state == SubscriberState.DISCONNECTED:
            raise RuntimeError("Subscriber is not connected. Call subscribe() first.")

    async def poll(self, timeout: float | None = None) -> list[DecodedRecord]:
        """
        Wait up to ``timeout`` seconds for records and decode them.

        Returns an empty list on timeout. Records that fail to decode for
        any reason other than a registry outage are reported to ``on_error``
        and skipped. If the registry is unreachable, each affected partition
        is rewound to the record that could not be decoded; when that leaves
        nothing to deliver the subscriber goes DISCONNECTED and the error is
        raised.

        Raises:
            TransportDisconnected: the fetch failed at the transport level
            RegistryUnavailable: no record in the batch could be decoded
        """
        self._require_connected()
        if timeout is None:
            timeout = self.config.consumer.poll_timeout_s

        self.state = SubscriberState.POLLING
        try:
            batches = await self._consumer.getmany(
                timeout_ms=int(timeout * 1000),
                max_records=self.config.consumer.max_poll_records,
            )
        except (KafkaError, OSError) as e:
            self._mark_disconnected()
            raise TransportDisconnected(f"Fetch failed: {e}", cause=e) from e

        records: list[DecodedRecord] = []
        positions: dict[TopicPartition, int] = {}
        rewinds: dict[TopicPartition, int] = {}
        registry_error: RegistryUnavailable | None = None
        skipped = 0

        for tp, messages in batches.items():
            for raw in messages:
                message = from_consumer_record(raw)
                try:
                    decoded = await self.codec.decode(raw.value, message)
                except RegistryUnavailable as e:
                    # Later records of this partition must wait so order is kept
                    registry_error = e
                    rewinds[tp] = message.offset
                    break
                except PipelineError as e:
                    skipped += 1
                    record_decode_failure(message.topic, type(e).__name__)
                    record_consumed(message.topic, self.group_id, "skipped")
                    await self._report(e, message, skipped=True)
                    positions[tp] = message.offset + 1
                    continue
                records.append(decoded)
                positions[tp] = message.offset + 1

        for tp, offset in rewinds.items():
            self._consumer.seek(tp, offset)

        if registry_error is not None and not records and not skipped:
            logger.warning(
                "Schema registry unavailable for batch, rewinding",
                extra={
                    "topics": sorted({tp.topic for tp in rewinds}),
                    "error_message": str(registry_error)[:200],
                },
            )
            self._mark_disconnected()
            raise registry_error

        if rewinds:
            logger.warning(
                "Schema registry unavailable for part of batch, rewound affected partitions",
                extra={"records_decoded": len(records), "records_skipped": skipped},
            )

        self._positions.update(positions)
        if positions:
            self.state = SubscriberState.PROCESSING

        if records or skipped:
            logger.debug(
                "Polled batch",
                extra={"records_decoded": len(records), "records_skipped": skipped},
            )
        return records

    async def _report(self, error: Exception, message: PipelineMessage, skipped: bool = False) -> None:
        extra = {
            "topic": message.topic,
            "partition": message.partition,
            "offset": message.offset,
            "error_type": type(error).__name__,
            "error_message": str(error)[:200],
        }
        if skipped or is_per_record_error(error):
            logger.warning("Skipping record", extra=extra)
        else:
            logger.error("Record handler raised", extra=extra, exc_info=error)

        if self.on_error is None:
            return
        try:
            outcome = self.on_error(error, message)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(
                "Error callback raised",
                extra={"topic": message.topic, "offset": message.offset, "callback_error": str(e)[:200]},
                exc_info=True,
            )

    async def acknowledge(self) -> None:
        """Commit the positions of every record handed out since the last acknowledge."""
        self._require_connected()
        if not self._positions:
            self.state = SubscriberState.POLLING
            return

        offsets = dict(self._positions)
        try:
            await self._consumer.commit(offsets)
        except (KafkaError, OSError) as e:
            self._mark_disconnected()
            raise TransportDisconnected(f"Offset commit failed: {e}", cause=e) from e

        self._positions.clear()
        for tp, offset in offsets.items():
            update_committed_offset(tp.topic, tp.partition, self.group_id, offset)
        self.state = SubscriberState.POLLING
        logger.debug("Committed offsets", extra={"partition": len(offsets)})

    async def consume_batch(self, handler: RecordHandler, timeout: float | None = None) -> int:
        """
        Poll once, run ``handler`` on each record in order, then acknowledge.

        Handler exceptions are reported to ``on_error``; the record counts as
        handled. Returns the number of records handed to the handler.
        """
        records = await self.poll(timeout)
        started = time.perf_counter()

        for record in records:
            with MessageLogContext(
                topic=record.topic,
                partition=record.partition,
                offset=record.offset,
                key=_key_text(record.key),
                schema_id=record.schema_id,
            ):
                try:
                    outcome = handler(record)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    record_consumed(record.topic, self.group_id, "error")
                    message = PipelineMessage(
                        topic=record.topic,
                        partition=record.partition,
                        offset=record.offset,
                        timestamp=record.timestamp,
                        key=record.key,
                    )
                    await self._report(e, message)
                else:
                    record_consumed(record.topic, self.group_id, "success")

        if records:
            batch_processing_duration_seconds.labels(topic=records[0].topic).observe(time.perf_counter() - started)

        if self.state == SubscriberState.PROCESSING:
            await self.acknowledge()
        return len(records)

    async def reconnect(self, error: Exception | None = None) -> None:
        """
        Recover after a systemic failure.

        A registry outage leaves the connection intact (partitions were already
        rewound), so the subscriber just resumes. Anything else rebuilds the
        consumer; uncommitted records are redelivered from the committed offsets.
        """
        if self.state == SubscriberState.CLOSED:
            raise RuntimeError("Subscriber is closed")

        if isinstance(error, RegistryUnavailable) and self._consumer is not None:
            logger.info("Resuming after schema registry outage", extra={"topics": self.topics})
            self.state = SubscriberState.SUBSCRIBED
            update_connection_status("consumer", connected=True)
            return

        logger.info("Reconnecting subscriber", extra={"topics": self.topics, "group_id": self.group_id})
        await self.subscribe(self.topics or None)

    def _mark_disconnected(self) -> None:
        self.state = SubscriberState.DISCONNECTED
        update_connection_status("consumer", connected=False)

    async def _release(self) -> None:
        consumer, self._consumer = self._consumer, None
        self._positions.clear()
        if consumer is None:
            return
        try:
            await consumer.stop()
        except (KafkaError, OSError) as e:
            logger.warning("Error stopping consumer", extra={"error": str(e)})
        finally:
            update_connection_status("consumer", connected=False)

    async def close(self) -> None:
        if self.state == SubscriberState.CLOSED:
            return
        logger.info("Closing subscriber", extra={"topics": self.topics, "group_id": self.group_id})
        await self._release()
        self.state = SubscriberState.CLOSED


__all__ = ["AvroSubscriber", "SubscriberState"]
