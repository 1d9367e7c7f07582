"""
avropipe: schema-governed event publish/consume pipeline.

Records are encoded as Avro against a schema held in a Confluent-compatible
schema registry, framed with the registry id, and published to Kafka. The
consumer side decodes every payload against the schema its id names.

Subpackages:
    registry - Avro schema model and async registry client
    common   - Publisher, subscriber, Kafka config, metrics
    runners  - Producer and consumer loops stopped by a shutdown event
    schemas  - Users schema and demo record source

Data flow:
    caller -> AvroPublisher -> RecordCodec.encode -> Kafka
           -> AvroSubscriber.poll -> RecordCodec.decode -> record handler

Dependencies:
    - core.*: errors, retry, logging, credentials
    - aiokafka: Kafka transport
    - aiohttp: schema registry REST calls
    - fastavro: Avro binary encoding
"""

__version__ = "0.1.0"
