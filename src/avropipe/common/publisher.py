"""Avro record publisher with asynchronous per-record delivery receipts."""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any

from aiokafka import AIOKafkaProducer
from aiokafka.errors import (
    KafkaConnectionError,
    KafkaError,
    KafkaTimeoutError,
    NodeNotReadyError,
    RequestTimedOutError,
)

from avropipe.codec import Record, RecordCodec
from avropipe.common.kafka_config import (
    build_connection_config,
    build_kafka_security_config,
    describe_security_config,
)
from avropipe.common.metrics import (
    record_delivery,
    record_producer_error,
    update_connection_status,
)
from avropipe.common.types import DeliveryCallback, DeliveryReceipt
from avropipe.registry.models import Schema
from config.config import PipelineConfig
from core.auth.credentials import KafkaCredentials
from core.errors.exceptions import (
    BackpressureTimeout,
    DeliveryAbandoned,
    PipelineError,
    TransportDisconnected,
    wrap_exception,
)

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (KafkaConnectionError, NodeNotReadyError, RequestTimedOutError, KafkaTimeoutError)


@dataclass
class _InFlight:
    key: bytes | None
    on_delivery: DeliveryCallback | None
    started_at: float
    size: int = 0


def _encode_key(key: str | bytes | None) -> bytes | None:
    if key is None or isinstance(key, bytes):
        return key
    return str(key).encode("utf-8")


def _delivery_error(exc: BaseException) -> PipelineError:
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, _CONNECTION_ERRORS):
        return TransportDisconnected(f"Delivery failed: {type(exc).__name__}: {exc}", cause=exc)
    return wrap_exception(exc, f"Delivery failed: {type(exc).__name__}: {exc}")


class AvroPublisher:
    """
    Publishes records encoded under one schema to one topic.

    ``publish`` never raises for per-record problems. Every call returns a
    future that resolves to exactly one DeliveryReceipt, and the optional
    ``on_delivery`` callback is run as a separate task once the receipt exists.
    Records with the same key keep their call order on the log: the producer is
    idempotent, keyed records land on the same partition, and records are
    encoded and handed to the send buffer one at a time.

    Usage:
        async with AvroPublisher(config, codec, USERS) as publisher:
            receipt = await (await publisher.publish({"id": 7, ...}, key="7"))
    """

    def __init__(
        self,
        config: PipelineConfig,
        codec: RecordCodec,
        schema: Schema,
        credentials: KafkaCredentials | None = None,
        topic: str | None = None,
        producer_factory=AIOKafkaProducer,
    ):
        self.config = config
        self.codec = codec
        self.schema = schema
        self.topic = topic or config.kafka.topic
        self.credentials = credentials
        self._producer_factory = producer_factory
        self._producer = None
        self._started = False
        self._in_flight: dict[asyncio.Future, _InFlight] = {}
        self._notify_tasks: set[asyncio.Task] = set()
        # Held from encode through send so records reach the buffer in call order
        self._send_lock = asyncio.Lock()
        self.transport_error: TransportDisconnected | None = None
        self.confirmed_deliveries = 0

        logger.info(
            "Initialized publisher",
            extra={
                "topic": self.topic,
                "schema_name": schema.full_name,
                "bootstrap_servers": config.kafka.bootstrap_servers,
                "security_protocol": config.security.security_protocol,
            },
        )

    @property
    def pending_deliveries(self) -> int:
        return len(self._in_flight)

    @property
    def connection_lost(self) -> bool:
        """True once a delivery failed at the transport level with no success since."""
        return self.transport_error is not None

    def _resolve_acks_and_idempotence(self) -> tuple[Any, bool]:
        """Resolve acks value and idempotence setting, enforcing mutual constraints."""
        acks_value = self.config.producer.acks
        if isinstance(acks_value, str) and acks_value.isdigit():
            acks_value = int(acks_value)

        enable_idempotence = self.config.producer.enable_idempotence
        if enable_idempotence and acks_value != "all":
            logger.warning(
                "Overriding acks to 'all' because enable_idempotence=True requires it",
                extra={"configured_acks": acks_value, "topic": self.topic},
            )
            acks_value = "all"

        return acks_value, enable_idempotence

    def _build_kafka_config(self) -> dict[str, Any]:
        acks_value, enable_idempotence = self._resolve_acks_and_idempotence()
        producer = self.config.producer

        kafka_config = build_connection_config(self.config)
        kafka_config.update(
            {
                "acks": acks_value,
                "enable_idempotence": enable_idempotence,
                "linger_ms": producer.linger_ms,
                "max_batch_size": producer.max_batch_size,
                "compression_type": None if producer.compression_type in (None, "none") else producer.compression_type,
            }
        )
        kafka_config.update(build_kafka_security_config(self.config, self.credentials))
        return kafka_config

    async def start(self) -> None:
        if self._started:
            logger.warning("Publisher already started, ignoring duplicate start call")
            return

        kafka_config = self._build_kafka_config()
        logger.info(
            "Starting publisher",
            extra={
                "bootstrap_servers": kafka_config["bootstrap_servers"],
                **describe_security_config(kafka_config),
            },
        )

        self._producer = self._producer_factory(**kafka_config)
        try:
            await self._producer.start()
        except (KafkaError, OSError) as e:
            self._producer = None
            raise TransportDisconnected(f"Cannot connect publisher: {e}", cause=e) from e

        self._started = True
        self.transport_error = None
        self.confirmed_deliveries = 0
        update_connection_status("producer", connected=True)
        logger.info(
            "Publisher started successfully",
            extra={
                "topic": self.topic,
                "acks": kafka_config["acks"],
                "enable_idempotence": kafka_config["enable_idempotence"],
            },
        )

    async def __aenter__(self) -> "AvroPublisher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def publish(
        self,
        record: Record,
        key: str | bytes | None = None,
        on_delivery: DeliveryCallback | None = None,
    ) -> asyncio.Future:
        """
        Encode ``record`` and hand it to the send buffer.

        Returns a future resolving to the DeliveryReceipt. Encode failures
        (SchemaMismatch, RegistryUnavailable), a full buffer
        (BackpressureTimeout) and broker failures all end up as the receipt's
        ``error``; nothing is sent for a record that fails to encode.
        """
        if not self._started or self._producer is None:
            raise RuntimeError("Publisher not started. Call start() first.")

        loop = asyncio.get_running_loop()
        result: asyncio.Future = loop.create_future()
        in_flight = _InFlight(key=_encode_key(key), on_delivery=on_delivery, started_at=loop.time())
        self._in_flight[result] = in_flight

        async with self._send_lock:
            return await self._encode_and_send(record, result, in_flight)

    async def _encode_and_send(self, record: Record, result: asyncio.Future, in_flight: _InFlight) -> asyncio.Future:
        if result.done():
            # Abandoned by stop() while waiting for the send lock
            return result

        try:
            value = await self.codec.encode(record, self.schema, self.topic)
        except PipelineError as e:
            logger.warning(
                "Record not published: encode failed",
                extra={"topic": self.topic, "error_type": type(e).__name__, "error_message": str(e)[:200]},
            )
            self._resolve(result, self._failure(in_flight, e))
            return result

        if result.done():
            # Abandoned by stop() while encoding
            return result

        in_flight.size = len(value)
        try:
            send_future = await asyncio.wait_for(
                self._producer.send(self.topic, value=value, key=in_flight.key),
                timeout=self.config.producer.backpressure_timeout_s,
            )
        except (asyncio.TimeoutError, KafkaTimeoutError) as e:
            error = BackpressureTimeout(
                f"Send buffer full for {self.config.producer.backpressure_timeout_s}s",
                cause=e,
                context={"topic": self.topic},
            )
            self._resolve(result, self._failure(in_flight, error))
            return result
        except KafkaError as e:
            self._resolve(result, self._failure(in_flight, _delivery_error(e)))
            return result

        send_future.add_done_callback(lambda fut: self._on_sent(result, fut))
        return result

    def _failure(self, in_flight: _InFlight, error: Exception) -> DeliveryReceipt:
        return DeliveryReceipt(topic=self.topic, partition=None, key=in_flight.key, error=error)

    def _on_sent(self, result: asyncio.Future, send_future: asyncio.Future) -> None:
        in_flight = self._in_flight.get(result)
        if in_flight is None or result.done():
            return

        if send_future.cancelled():
            receipt = self._failure(in_flight, DeliveryAbandoned("Send cancelled before delivery"))
        elif send_future.exception() is not None:
            receipt = self._failure(in_flight, _delivery_error(send_future.exception()))
        else:
            metadata = send_future.result()
            receipt = DeliveryReceipt(
                topic=metadata.topic,
                partition=metadata.partition,
                key=in_flight.key,
                offset=metadata.offset,
                timestamp=metadata.timestamp,
            )
        self._resolve(result, receipt)

    def _resolve(self, result: asyncio.Future, receipt: DeliveryReceipt) -> None:
        in_flight = self._in_flight.pop(result, None)
        if in_flight is None or result.done():
            return
        result.set_result(receipt)

        loop = asyncio.get_running_loop()
        latency = loop.time() - in_flight.started_at
        if receipt.succeeded:
            record_delivery(self.topic, in_flight.size, "success", latency)
            self.transport_error = None
            self.confirmed_deliveries += 1
            logger.debug(
                "Record delivered",
                extra={"topic": receipt.topic, "partition": receipt.partition, "offset": receipt.offset},
            )
        else:
            status = "abandoned" if isinstance(receipt.error, DeliveryAbandoned) else "error"
            record_delivery(self.topic, in_flight.size, status, latency)
            record_producer_error(self.topic, type(receipt.error).__name__)
            if isinstance(receipt.error, TransportDisconnected) and self.transport_error is None:
                self.transport_error = receipt.error
                update_connection_status("producer", connected=False)
                logger.warning(
                    "Publisher lost its broker connection",
                    extra={"topic": self.topic, "error_message": str(receipt.error)[:200]},
                )

        if in_flight.on_delivery is not None:
            task = loop.create_task(self._notify(in_flight.on_delivery, receipt))
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_tasks.discard)

    async def _notify(self, handler: DeliveryCallback, receipt: DeliveryReceipt) -> None:
        try:
            outcome = handler(receipt)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(
                "Delivery callback raised",
                extra={"topic": receipt.topic, "callback_error": str(e)[:200]},
                exc_info=True,
            )

    def _abandon_in_flight(self) -> int:
        abandoned = 0
        for result, in_flight in list(self._in_flight.items()):
            if result.done():
                self._in_flight.pop(result, None)
                continue
            error = DeliveryAbandoned(
                "Publisher stopped before delivery was confirmed",
                context={"topic": self.topic},
            )
            self._resolve(result, self._failure(in_flight, error))
            abandoned += 1
        return abandoned

    async def stop(self) -> None:
        """
        Flush within ``shutdown_grace_s``, fail whatever is left with
        DeliveryAbandoned, run every pending delivery callback, then release
        the connection.
        """
        if self._producer is None:
            logger.debug("Publisher already stopped")
            return

        loop = asyncio.get_running_loop()
        grace = self.config.producer.shutdown_grace_s
        deadline = loop.time() + grace
        logger.info("Stopping publisher", extra={"pending_deliveries": len(self._in_flight)})

        try:
            if self._started:
                try:
                    await asyncio.wait_for(self._producer.flush(), timeout=grace)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Flush did not complete within grace period",
                        extra={"delay_seconds": grace, "pending_deliveries": len(self._in_flight)},
                    )
                except KafkaError as e:
                    logger.warning("Flush failed", extra={"error": str(e)})

                # Receipts are built in send-future callbacks; give them the rest of the grace period
                pending = [f for f in self._in_flight if not f.done()]
                remaining = deadline - loop.time()
                if pending and remaining > 0:
                    await asyncio.wait(pending, timeout=remaining)

            abandoned = self._abandon_in_flight()
            if abandoned:
                logger.warning("Abandoned unflushed records", extra={"abandoned": abandoned, "topic": self.topic})

            if self._notify_tasks:
                await asyncio.gather(*list(self._notify_tasks), return_exceptions=True)

            await self._producer.stop()
            logger.info("Publisher stopped successfully")
        except Exception as e:
            # Errors during stop are logged but not re-raised to avoid masking original exceptions
            logger.error("Error stopping publisher", extra={"error": str(e)}, exc_info=True)
        finally:
            update_connection_status("producer", connected=False)
            self._producer = None
            self._started = False


__all__ = ["AvroPublisher"]
