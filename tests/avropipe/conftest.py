"""
In-memory stand-ins for the broker and the schema registry.

FakeBroker keeps partitioned logs and per-group committed offsets; its
producer_factory / consumer_factory build objects with the slice of the
aiokafka AIOKafkaProducer / AIOKafkaConsumer API the pipeline uses.
FakeRegistryServer answers the registry REST paths and is plugged into a
real SchemaRegistryClient in place of its HTTP round trip.
"""

import asyncio
import json
import zlib
from collections import namedtuple
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest
from aiokafka.errors import KafkaConnectionError
from aiokafka.structs import TopicPartition

from avropipe.registry.client import SchemaRegistryClient, classify_registry_error
from config.config import PipelineConfig
from core.errors.exceptions import RegistryAuthError, RegistryUnavailable
from core.resilience.retry import RetryConfig

RecordMetadata = namedtuple("RecordMetadata", ["topic", "partition", "offset", "timestamp"])


# =============================================================================
# Broker
# =============================================================================


class FakeBroker:
    """Partitioned in-memory log shared by every producer and consumer built from it."""

    def __init__(self, topics: Optional[Dict[str, int]] = None):
        self.logs: Dict[TopicPartition, List[SimpleNamespace]] = {}
        self.committed: Dict[Tuple[str, TopicPartition], int] = {}
        self.producers: List["FakeProducer"] = []
        self.consumers: List["FakeConsumer"] = []
        self.fail_fetches = 0
        self.fail_starts = 0
        # Fails sends on every producer built from this broker
        self.fail_sends: Optional[Exception] = None
        self._round_robin = 0
        for topic, partitions in (topics or {"users": 1}).items():
            self.create_topic(topic, partitions)

    def create_topic(self, topic: str, partitions: int = 1) -> None:
        for p in range(partitions):
            self.logs.setdefault(TopicPartition(topic, p), [])

    def topics(self) -> set:
        return {tp.topic for tp in self.logs}

    def partitions_for(self, topic: str) -> List[TopicPartition]:
        return sorted((tp for tp in self.logs if tp.topic == topic), key=lambda tp: tp.partition)

    def choose_partition(self, topic: str, key: Optional[bytes]) -> TopicPartition:
        partitions = self.partitions_for(topic)
        if key is None:
            self._round_robin += 1
            return partitions[self._round_robin % len(partitions)]
        return partitions[zlib.crc32(key) % len(partitions)]

    def append(self, topic: str, value: Optional[bytes], key: Optional[bytes] = None, partition: Optional[int] = None):
        if partition is None:
            tp = self.choose_partition(topic, key)
        else:
            tp = TopicPartition(topic, partition)
        log = self.logs[tp]
        record = SimpleNamespace(
            topic=tp.topic,
            partition=tp.partition,
            offset=len(log),
            timestamp=1_700_000_000_000 + len(log),
            key=key,
            value=value,
            headers=[],
        )
        log.append(record)
        return record

    def records(self, topic: str) -> List[SimpleNamespace]:
        out: List[SimpleNamespace] = []
        for tp in self.partitions_for(topic):
            out.extend(self.logs[tp])
        return out

    def producer_factory(self, **config):
        producer = FakeProducer(self, config)
        self.producers.append(producer)
        return producer

    def consumer_factory(self, **config):
        consumer = FakeConsumer(self, config)
        self.consumers.append(consumer)
        return consumer


class FakeProducer:
    """
    Send futures stay pending until flush(), or until release() when
    ``hold`` is set. ``hang_flush`` makes flush() never finish.
    """

    def __init__(self, broker: FakeBroker, config: Dict[str, Any]):
        self.broker = broker
        self.config = config
        self.started = False
        self.stopped = False
        self.hold = False
        self.hang_flush = False
        self.fail_sends: Optional[Exception] = None
        self.pending: List[Tuple[asyncio.Future, str, Optional[bytes], Optional[bytes]]] = []
        self.events: List[str] = []

    async def start(self) -> None:
        if self.broker.fail_starts > 0:
            self.broker.fail_starts -= 1
            raise KafkaConnectionError("broker unreachable")
        self.started = True
        self.events.append("start")

    async def send(self, topic: str, value: Optional[bytes] = None, key: Optional[bytes] = None):
        future = asyncio.get_running_loop().create_future()
        self.pending.append((future, topic, value, key))
        if not self.hold:
            self._complete_next()
        return future

    def _complete_next(self) -> None:
        future, topic, value, key = self.pending.pop(0)
        error = self.fail_sends or self.broker.fail_sends
        if error is not None:
            future.set_exception(error)
            return
        record = self.broker.append(topic, value, key)
        future.set_result(RecordMetadata(record.topic, record.partition, record.offset, record.timestamp))

    def release(self) -> None:
        while self.pending:
            self._complete_next()

    async def flush(self) -> None:
        self.events.append("flush")
        if self.hang_flush:
            await asyncio.Event().wait()
        self.release()

    async def stop(self) -> None:
        self.stopped = True
        self.events.append("stop")


class FakeConsumer:
    def __init__(self, broker: FakeBroker, config: Dict[str, Any]):
        self.broker = broker
        self.config = config
        self.group_id = config.get("group_id")
        self.started = False
        self.stopped = False
        self.subscription: List[str] = []
        self.positions: Dict[TopicPartition, int] = {}
        self.seeks: List[Tuple[TopicPartition, int]] = []
        self.fail_commit: Optional[Exception] = None

    async def start(self) -> None:
        if self.broker.fail_starts > 0:
            self.broker.fail_starts -= 1
            raise KafkaConnectionError("broker unreachable")
        self.started = True

    async def topics(self) -> set:
        return self.broker.topics()

    def subscribe(self, topics: List[str]) -> None:
        self.subscription = list(topics)

    def _position(self, tp: TopicPartition) -> int:
        if tp not in self.positions:
            self.positions[tp] = self.broker.committed.get((self.group_id, tp), 0)
        return self.positions[tp]

    async def getmany(self, timeout_ms: int = 0, max_records: Optional[int] = None):
        if self.broker.fail_fetches > 0:
            self.broker.fail_fetches -= 1
            raise KafkaConnectionError("connection reset")

        remaining = max_records or 500
        batches: Dict[TopicPartition, List[SimpleNamespace]] = {}
        for topic in self.subscription:
            for tp in self.broker.partitions_for(topic):
                start = self._position(tp)
                chunk = self.broker.logs[tp][start : start + remaining]
                if chunk:
                    batches[tp] = chunk
                    self.positions[tp] = start + len(chunk)
                    remaining -= len(chunk)
                if remaining <= 0:
                    break

        if not batches:
            await asyncio.sleep(min(timeout_ms / 1000, 0.01))
        return batches

    def seek(self, tp: TopicPartition, offset: int) -> None:
        self.seeks.append((tp, offset))
        self.positions[tp] = offset

    async def commit(self, offsets: Dict[TopicPartition, int]) -> None:
        if self.fail_commit is not None:
            raise self.fail_commit
        for tp, offset in offsets.items():
            self.broker.committed[(self.group_id, tp)] = offset

    async def stop(self) -> None:
        self.stopped = True


# =============================================================================
# Registry
# =============================================================================

_NOT_FOUND_BODY = json.dumps({"error_code": 40403, "message": "Schema not found"})


class FakeRegistryServer:
    """Answers the register / check / lookup paths of a schema registry."""

    def __init__(self):
        self.down = False
        self.fail_next = 0
        self.reject_auth = False
        self.rejected_ids: set = set()
        self.ids_by_schema: Dict[str, int] = {}
        self.subjects: Dict[str, List[int]] = {}
        self.requests: List[Tuple[str, str]] = []

    def add(self, subject: str, schema_text: str) -> int:
        schema_id = self.ids_by_schema.setdefault(schema_text, len(self.ids_by_schema) + 1)
        versions = self.subjects.setdefault(subject, [])
        if schema_id not in versions:
            versions.append(schema_id)
        return schema_id

    async def handle(self, method: str, path: str, operation: str, json_body: Optional[dict] = None) -> Any:
        self.requests.append((method, path))
        if self.down or self.fail_next > 0:
            self.fail_next = max(self.fail_next - 1, 0)
            raise RegistryUnavailable("Registry connection error: Cannot connect to host", context={"operation": operation})
        if self.reject_auth:
            raise RegistryAuthError(f"Registry rejected credentials (401): {path}", status_code=401)

        parts = path.strip("/").split("/")
        if method == "POST" and parts[0] == "subjects" and len(parts) == 3:
            return {"id": self.add(parts[1], json_body["schema"])}
        if method == "POST" and parts[0] == "subjects" and len(parts) == 2:
            schema_id = self.ids_by_schema.get(json_body["schema"])
            if schema_id is None or schema_id not in self.subjects.get(parts[1], []):
                raise classify_registry_error(404, path, _NOT_FOUND_BODY)
            return {"subject": parts[1], "id": schema_id, "version": 1, "schema": json_body["schema"]}
        if method == "GET" and parts[:2] == ["schemas", "ids"]:
            schema_id = int(parts[2])
            if schema_id in self.rejected_ids:
                raise classify_registry_error(400, path, '{"error_code": 40001, "message": "Bad request"}')
            for text, known_id in self.ids_by_schema.items():
                if known_id == schema_id:
                    return {"schema": text}
            raise classify_registry_error(404, path, _NOT_FOUND_BODY)
        raise classify_registry_error(405, path, "")


FAST_REGISTRY_RETRY = RetryConfig(max_attempts=2, base_delay=0.0, max_delay=0.0, never_retry={RegistryAuthError})


def make_registry_client(server: FakeRegistryServer, **kwargs) -> SchemaRegistryClient:
    client = SchemaRegistryClient("http://registry.test:8081", retry_config=FAST_REGISTRY_RETRY, **kwargs)
    client._request = server.handle
    return client


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def broker():
    return FakeBroker({"users": 3})


@pytest.fixture
def registry_server():
    return FakeRegistryServer()


@pytest.fixture
def registry(registry_server):
    return make_registry_client(registry_server)


@pytest.fixture
def registry_factory(registry_server):
    """Builds further clients on the same server, each with an empty cache."""

    def factory(**kwargs):
        return make_registry_client(registry_server, **kwargs)

    return factory


@pytest.fixture
def pipeline_config():
    config = PipelineConfig.from_dict(
        {
            "kafka": {"bootstrap_servers": "broker.test:9092", "topic": "users", "group_id": "test-group"},
            "producer": {"shutdown_grace_s": 0.2, "backpressure_timeout_s": 1, "interval_seconds": 0},
            "consumer": {"poll_timeout_s": 0.01, "max_poll_records": 100},
            "schema_registry": {"url": "http://registry.test:8081"},
            "reconnect": {"max_attempts": 3, "base_delay_s": 0.0, "max_delay_s": 0.0},
        }
    )
    config.validate()
    return config
