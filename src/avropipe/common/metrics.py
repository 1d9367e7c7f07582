"""
Prometheus metrics for pipeline monitoring.

Provides instrumentation for:
- Record production and consumption rates
- Decode failures and skipped records by error type
- Delivery latency and registry request latency
- Connection status and reconnect attempts
"""

from prometheus_client import Counter, Gauge, Histogram

# Record production metrics
records_produced_total = Counter(
    "avropipe_records_produced_total",
    "Total number of records published, by delivery outcome",
    ["topic", "status"],  # status: success, error, abandoned
)

records_produced_bytes = Counter(
    "avropipe_records_produced_bytes_total",
    "Total bytes of encoded payload published",
    ["topic"],
)

delivery_latency_seconds = Histogram(
    "avropipe_delivery_latency_seconds",
    "Time from publish() to delivery receipt",
    ["topic"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

producer_errors_total = Counter(
    "avropipe_producer_errors_total",
    "Total number of failed publishes by error type",
    ["topic", "error_type"],
)

# Record consumption metrics
records_consumed_total = Counter(
    "avropipe_records_consumed_total",
    "Total number of records consumed, by outcome",
    ["topic", "consumer_group", "status"],  # status: success, skipped, error
)

decode_failures_total = Counter(
    "avropipe_decode_failures_total",
    "Total number of records that failed to decode, by error type",
    ["topic", "error_type"],
)

consumer_offset = Gauge(
    "avropipe_consumer_committed_offset",
    "Last committed offset per partition",
    ["topic", "partition", "consumer_group"],
)

batch_processing_duration_seconds = Histogram(
    "avropipe_batch_processing_duration_seconds",
    "Time spent decoding and handling one polled batch",
    ["topic"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Schema registry metrics
registry_requests_total = Counter(
    "avropipe_registry_requests_total",
    "Total number of schema registry requests",
    ["operation", "status"],  # status: success, error
)

registry_request_duration_seconds = Histogram(
    "avropipe_registry_request_duration_seconds",
    "Time spent waiting for schema registry responses",
    ["operation"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Connection health metrics
connection_status = Gauge(
    "avropipe_connection_status",
    "Connection status (1=connected, 0=disconnected)",
    ["component"],  # component: producer, consumer
)

reconnect_attempts_total = Counter(
    "avropipe_reconnect_attempts_total",
    "Total number of reconnect attempts after connection-level errors",
    ["component"],
)


def record_delivery(topic: str, message_bytes: int, status: str, latency_s: float | None = None) -> None:
    """
    Record the outcome of one publish.

    Args:
        topic: Topic name
        message_bytes: Size of the encoded payload in bytes
        status: success, error or abandoned
        latency_s: Seconds from publish() to receipt, when known
    """
    records_produced_total.labels(topic=topic, status=status).inc()
    if status == "success":
        records_produced_bytes.labels(topic=topic).inc(message_bytes)
    if latency_s is not None:
        delivery_latency_seconds.labels(topic=topic).observe(latency_s)


def record_producer_error(topic: str, error_type: str) -> None:
    producer_errors_total.labels(topic=topic, error_type=error_type).inc()


def record_consumed(topic: str, consumer_group: str, status: str) -> None:
    records_consumed_total.labels(topic=topic, consumer_group=consumer_group, status=status).inc()


def record_decode_failure(topic: str, error_type: str) -> None:
    decode_failures_total.labels(topic=topic, error_type=error_type).inc()


def update_committed_offset(topic: str, partition: int, consumer_group: str, offset: int) -> None:
    consumer_offset.labels(topic=topic, partition=str(partition), consumer_group=consumer_group).set(offset)


def record_registry_request(operation: str, success: bool, duration_s: float) -> None:
    """
    Record one schema registry round trip.

    Args:
        operation: register, lookup or check
        success: Whether the request returned a usable answer
        duration_s: Round-trip time in seconds
    """
    status = "success" if success else "error"
    registry_requests_total.labels(operation=operation, status=status).inc()
    registry_request_duration_seconds.labels(operation=operation).observe(duration_s)


def update_connection_status(component: str, connected: bool) -> None:
    """
    Update connection status.

    Args:
        component: Component name (producer, consumer)
        connected: Whether the component is connected
    """
    connection_status.labels(component=component).set(1 if connected else 0)


def record_reconnect_attempt(component: str) -> None:
    reconnect_attempts_total.labels(component=component).inc()


__all__ = [
    # Metrics
    "records_produced_total",
    "records_produced_bytes",
    "delivery_latency_seconds",
    "producer_errors_total",
    "records_consumed_total",
    "decode_failures_total",
    "consumer_offset",
    "batch_processing_duration_seconds",
    "registry_requests_total",
    "registry_request_duration_seconds",
    "connection_status",
    "reconnect_attempts_total",
    # Helper functions
    "record_delivery",
    "record_producer_error",
    "record_consumed",
    "record_decode_failure",
    "update_committed_offset",
    "record_registry_request",
    "update_connection_status",
    "record_reconnect_attempt",
]
