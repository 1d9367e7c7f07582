"""
Producer and consumer loops.

Both run until the shared shutdown event is set, release their transport
connection on every exit path, and surface ReconnectExhausted when the
reconnect budget for connection-level errors is spent.
"""

import asyncio
import logging
from collections.abc import AsyncIterable, Callable, Iterable
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from avropipe.codec import Record, RecordCodec
from avropipe.common.metrics import record_reconnect_attempt
from avropipe.common.publisher import AvroPublisher
from avropipe.common.subscriber import AvroSubscriber
from avropipe.common.types import DeliveryCallback, ErrorCallback, RecordHandler
from avropipe.registry.client import SchemaRegistryClient
from avropipe.registry.models import Schema
from avropipe.runners.common import _start_with_retry, wait_for_shutdown
from config.config import PipelineConfig
from core.auth.credentials import CredentialProvider
from core.errors.exceptions import (
    ReconnectExhausted,
    RegistryUnavailable,
    TransportDisconnected,
)
from core.logging.context import set_log_context
from core.logging.utilities import log_exception
from core.resilience.retry import RetryConfig

logger = logging.getLogger(__name__)

RecordSource = Iterable[Record] | AsyncIterable[Record] | Callable[[], Any]


async def _iter_records(source: RecordSource):
    if callable(source) and not hasattr(source, "__iter__") and not hasattr(source, "__aiter__"):
        source = source()
    if hasattr(source, "__aiter__"):
        async for record in source:
            yield record
    else:
        for record in source:
            yield record


async def _reconnect_publisher(
    publisher: AvroPublisher,
    attempt: int,
    retry: RetryConfig,
    shutdown_event: asyncio.Event,
) -> bool:
    """Rebuild the producer after a lost connection; False if shutdown came first."""
    error = publisher.transport_error
    if attempt > retry.max_attempts:
        log_exception(
            logger,
            error,
            "Producer reconnect budget exhausted",
            include_traceback=False,
            total_attempts=retry.max_attempts,
        )
        raise ReconnectExhausted("producer", retry.max_attempts, cause=error) from error

    delay = retry.get_delay(attempt - 1)
    record_reconnect_attempt("producer")
    logger.warning(
        "Producer disconnected, reconnecting",
        extra={
            "error_message": str(error)[:200],
            "attempt": attempt,
            "max_attempts": retry.max_attempts,
            "delay_seconds": round(delay, 2),
        },
    )
    await publisher.stop()
    if await wait_for_shutdown(shutdown_event, delay):
        return False
    return await _start_with_retry(publisher.start, "producer", retry, shutdown_event)


def _registry_for(
    config: PipelineConfig,
    registry: SchemaRegistryClient | None,
    credentials: CredentialProvider | None,
) -> tuple[SchemaRegistryClient, bool]:
    if registry is not None:
        return registry, False
    auth = credentials.registry_auth() if credentials is not None else None
    return SchemaRegistryClient.from_config(config, auth=auth), True


async def run_producer_loop(
    config: PipelineConfig,
    record_generator: RecordSource,
    shutdown_event: asyncio.Event,
    *,
    schema: Schema,
    registry: SchemaRegistryClient | None = None,
    credentials: CredentialProvider | None = None,
    on_delivery: DeliveryCallback | None = None,
    key_fn: Callable[[Record], str | bytes | None] | None = None,
    producer_factory=AIOKafkaProducer,
) -> int:
    """
    Publish records from ``record_generator`` once per ``producer.interval_seconds``.

    Stops when the generator is exhausted or the shutdown event is set, then
    flushes: every published record gets its delivery notification before the
    connection is released. A delivery that fails at the transport level
    rebuilds the producer with backoff before the next record; after
    ``reconnect.max_attempts`` rebuilds without a confirmed delivery the loop
    raises ReconnectExhausted.

    Args:
        record_generator: Iterable, async iterable, or a callable returning one
        schema: Schema every record is encoded under
        registry: Shared registry client; one is created (and closed) if omitted
        credentials: Source of broker and registry credentials
        on_delivery: Called with each DeliveryReceipt
        key_fn: Derives the record key; records without a key are spread across partitions

    Returns:
        Number of records handed to the publisher
    """
    set_log_context(component="producer", client_id=config.kafka.client_id)
    registry, owns_registry = _registry_for(config, registry, credentials)
    kafka_credentials = credentials.kafka_credentials() if credentials is not None else None

    publisher = AvroPublisher(
        config,
        RecordCodec(registry),
        schema,
        credentials=kafka_credentials,
        producer_factory=producer_factory,
    )
    interval = config.producer.interval_seconds
    retry = config.reconnect.to_retry_config()
    published = 0
    reconnects = 0

    try:
        started = await _start_with_retry(publisher.start, "producer", retry, shutdown_event)
        if not started:
            return 0

        logger.info("Producer loop running", extra={"topic": publisher.topic, "delay_seconds": interval})
        async for record in _iter_records(record_generator):
            if shutdown_event.is_set():
                break
            if publisher.connection_lost:
                reconnects += 1
                if not await _reconnect_publisher(publisher, reconnects, retry, shutdown_event):
                    break
            elif publisher.confirmed_deliveries:
                reconnects = 0
            key = key_fn(record) if key_fn is not None else None
            await publisher.publish(record, key=key, on_delivery=on_delivery)
            published += 1
            if await wait_for_shutdown(shutdown_event, interval):
                break
    finally:
        await publisher.stop()
        if owns_registry:
            await registry.close()
        logger.info("Producer loop stopped", extra={"batch_size": published})

    return published


async def run_consumer_loop(
    config: PipelineConfig,
    record_handler: RecordHandler,
    shutdown_event: asyncio.Event,
    *,
    on_error: ErrorCallback | None = None,
    topics: list[str] | None = None,
    registry: SchemaRegistryClient | None = None,
    credentials: CredentialProvider | None = None,
    consumer_factory=AIOKafkaConsumer,
) -> int:
    """
    Subscribe and hand every decoded record to ``record_handler`` until shutdown.

    Transport disconnections and registry outages put the subscriber in
    DISCONNECTED; the loop backs off exponentially and reconnects, raising
    ReconnectExhausted after ``reconnect.max_attempts`` consecutive failures.

    Returns:
        Number of records handed to the handler
    """
    set_log_context(component="consumer", client_id=config.kafka.client_id)
    registry, owns_registry = _registry_for(config, registry, credentials)
    kafka_credentials = credentials.kafka_credentials() if credentials is not None else None
    retry = config.reconnect.to_retry_config()

    subscriber = AvroSubscriber(
        config,
        RecordCodec(registry),
        credentials=kafka_credentials,
        on_error=on_error,
        consumer_factory=consumer_factory,
    )
    handled = 0

    try:
        started = await _start_with_retry(
            lambda: subscriber.subscribe(topics), "consumer", retry, shutdown_event
        )
        if not started:
            return 0

        logger.info("Consumer loop running", extra={"topics": subscriber.topics, "group_id": subscriber.group_id})
        failure: Exception | None = None
        failures = 0
        while not shutdown_event.is_set():
            try:
                if failure is not None:
                    await subscriber.reconnect(failure)
                    failure = None
                handled += await subscriber.consume_batch(record_handler)
                failures = 0
            except (TransportDisconnected, RegistryUnavailable) as e:
                failure = e
                failures += 1
                if failures > retry.max_attempts:
                    log_exception(
                        logger,
                        e,
                        "Consumer reconnect budget exhausted",
                        include_traceback=False,
                        total_attempts=retry.max_attempts,
                    )
                    raise ReconnectExhausted("consumer", retry.max_attempts, cause=e) from e

                delay = retry.get_delay(failures - 1)
                record_reconnect_attempt("consumer")
                logger.warning(
                    "Consumer disconnected, reconnecting",
                    extra={
                        "error_type": type(e).__name__,
                        "error_message": str(e)[:200],
                        "attempt": failures,
                        "max_attempts": retry.max_attempts,
                        "delay_seconds": round(delay, 2),
                    },
                )
                if await wait_for_shutdown(shutdown_event, delay):
                    break
    finally:
        await subscriber.close()
        if owns_registry:
            await registry.close()
        logger.info("Consumer loop stopped", extra={"records_decoded": handled})

    return handled


__all__ = ["run_producer_loop", "run_consumer_loop"]
