"""
End-to-end flows: producer loop and consumer loop sharing one in-memory
broker and one registry server, each with its own registry client cache.
"""

import asyncio

import pytest

from avropipe.runners.loops import run_consumer_loop, run_producer_loop
from avropipe.schemas.users import USERS, UserRecord, log_delivery, log_user, user_key


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


class TestPipelineFlow:
    @pytest.mark.asyncio
    async def test_alice_round_trip(self, pipeline_config, registry_factory, broker, caplog):
        caplog.set_level("INFO")
        alice = UserRecord(id=1, name="Alice", age=30)

        published = await run_producer_loop(
            pipeline_config,
            [alice],
            asyncio.Event(),
            schema=USERS,
            registry=registry_factory(),
            on_delivery=log_delivery,
            key_fn=user_key,
            producer_factory=broker.producer_factory,
        )

        shutdown = asyncio.Event()
        received = []

        def handler(record):
            log_user(record)
            received.append(record)
            shutdown.set()

        await run_consumer_loop(
            pipeline_config, handler, shutdown, registry=registry_factory(), consumer_factory=broker.consumer_factory
        )

        assert published == 1
        assert [r.value for r in received] == [{"id": 1, "name": "Alice", "age": 30}]
        assert received[0].key == b"1"
        assert any(m.startswith("Sent Avro message to topic users") for m in caplog.messages)
        assert any(m.startswith("Received User: id=1, name=Alice, age=30") for m in caplog.messages)

    @pytest.mark.asyncio
    async def test_per_key_order_preserved(self, pipeline_config, registry_factory, broker):
        records = [{"id": user_id, "name": "Bob", "age": age} for age in range(20, 30) for user_id in (1, 2, 3)]

        await run_producer_loop(
            pipeline_config,
            records,
            asyncio.Event(),
            schema=USERS,
            registry=registry_factory(),
            key_fn=lambda r: str(r["id"]),
            producer_factory=broker.producer_factory,
        )

        shutdown = asyncio.Event()
        ages_by_user = {1: [], 2: [], 3: []}

        def handler(record):
            ages_by_user[record.value["id"]].append(record.value["age"])
            if sum(len(v) for v in ages_by_user.values()) == len(records):
                shutdown.set()

        await run_consumer_loop(
            pipeline_config, handler, shutdown, registry=registry_factory(), consumer_factory=broker.consumer_factory
        )

        for ages in ages_by_user.values():
            assert ages == list(range(20, 30))

    @pytest.mark.asyncio
    async def test_in_flight_records_notified_before_stop(self, pipeline_config, registry_factory, broker):
        shutdown = asyncio.Event()
        notified = []
        stop_seen_at = []

        original_factory = broker.producer_factory

        def holding_factory(**config):
            producer = original_factory(**config)
            producer.hold = True
            original_stop = producer.stop

            async def stop():
                stop_seen_at.append(len(notified))
                await original_stop()

            producer.stop = stop
            return producer

        async def source():
            for i in range(3):
                yield {"id": i, "name": "Carol", "age": 40}
            shutdown.set()

        count = await run_producer_loop(
            pipeline_config,
            source(),
            shutdown,
            schema=USERS,
            registry=registry_factory(),
            on_delivery=notified.append,
            producer_factory=holding_factory,
        )

        assert count == 3
        assert len(notified) == 3
        assert all(r.succeeded for r in notified)
        assert stop_seen_at == [3]

    @pytest.mark.asyncio
    async def test_registry_outage_then_redelivery(self, pipeline_config, registry_factory, registry_server, broker):
        pipeline_config.reconnect.max_attempts = 100
        pipeline_config.reconnect.base_delay_s = 0.001
        pipeline_config.reconnect.max_delay_s = 0.001

        await run_producer_loop(
            pipeline_config,
            [{"id": 9, "name": "Dave", "age": 55}],
            asyncio.Event(),
            schema=USERS,
            registry=registry_factory(),
            producer_factory=broker.producer_factory,
        )

        registry_server.down = True
        requests_before = len(registry_server.requests)
        shutdown = asyncio.Event()
        received = []

        consumer = asyncio.create_task(
            run_consumer_loop(
                pipeline_config,
                received.append,
                shutdown,
                registry=registry_factory(),
                consumer_factory=broker.consumer_factory,
            )
        )

        await _wait_until(lambda: len(registry_server.requests) - requests_before >= 4)
        assert received == []
        registry_server.down = False

        await _wait_until(lambda: received)
        shutdown.set()
        handled = await consumer

        assert handled == 1
        assert received[0].value == {"id": 9, "name": "Dave", "age": 55}
        assert sum(broker.committed.values()) == 1
        assert len(broker.consumers) == 1
