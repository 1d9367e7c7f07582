"""
Record codec: Avro binary bodies framed with the registry schema id.

Wire format (Confluent framing):

    byte 0      magic byte 0x00
    bytes 1-4   schema id, unsigned 32-bit big-endian
    bytes 5-    Avro binary encoding of the record (no container header)
"""

import io
import logging
import struct
from collections.abc import Mapping
from typing import Any

from fastavro import schemaless_reader, schemaless_writer
from pydantic import BaseModel

from avropipe.common.types import DecodedRecord, PipelineMessage
from avropipe.registry.client import SchemaRegistryClient
from avropipe.registry.models import Schema
from core.errors.exceptions import MalformedPayload, SchemaMismatch

logger = logging.getLogger(__name__)

MAGIC_BYTE = 0
HEADER = struct.Struct(">BI")
HEADER_SIZE = HEADER.size  # 5

Record = Mapping[str, Any] | BaseModel


def to_mapping(record: Record) -> dict[str, Any]:
    """Pydantic models are dumped to plain dicts; mappings are copied."""
    if isinstance(record, BaseModel):
        return record.model_dump()
    if isinstance(record, Mapping):
        return dict(record)
    raise SchemaMismatch(f"Record must be a mapping or pydantic model, got {type(record).__name__}")


def split_header(payload: bytes) -> tuple[int, memoryview]:
    """Return (schema_id, body) or raise MalformedPayload."""
    if payload is None:
        raise MalformedPayload("Payload is empty (null value)")
    if len(payload) < HEADER_SIZE:
        raise MalformedPayload(
            f"Payload too short: {len(payload)} bytes, need at least {HEADER_SIZE}",
            context={"payload_size": len(payload)},
        )

    magic, schema_id = HEADER.unpack_from(payload)
    if magic != MAGIC_BYTE:
        raise MalformedPayload(
            f"Unknown magic byte {magic:#04x}, expected {MAGIC_BYTE:#04x}",
            context={"magic_byte": magic},
        )
    return schema_id, memoryview(payload)[HEADER_SIZE:]


class RecordCodec:
    """
    Encodes records against a registered schema and decodes framed payloads.

    Every schema id seen is resolved through the registry client, whose
    cache is shared by all codecs built on it.
    """

    def __init__(self, registry: SchemaRegistryClient):
        self.registry = registry

    async def encode(self, record: Record, schema: Schema, topic: str | None = None) -> bytes:
        """
        Encode ``record`` under ``schema``.

        Raises:
            SchemaMismatch: record fields or value types do not match the schema
            RegistryUnavailable: the schema could not be registered or resolved
        """
        data = to_mapping(record)
        # Check before touching the registry so a bad record never registers anything
        schema.check_record(data)

        subject = self.registry.subject_for(topic, schema)
        schema_id = await self.registry.register(subject, schema)
        return self.encode_with_id(data, schema, schema_id)

    @staticmethod
    def encode_with_id(data: Mapping[str, Any], schema: Schema, schema_id: int) -> bytes:
        buffer = io.BytesIO()
        buffer.write(HEADER.pack(MAGIC_BYTE, schema_id))
        try:
            schemaless_writer(buffer, schema.parsed, dict(data))
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            raise SchemaMismatch(
                f"Record could not be written under {schema.full_name}: {e}",
                schema_name=schema.full_name,
                cause=e,
            ) from e
        return buffer.getvalue()

    async def decode(self, payload: bytes, message: PipelineMessage | None = None) -> DecodedRecord:
        """
        Decode a framed payload.

        Raises:
            MalformedPayload: too short, wrong magic byte, or body does not parse
            UnknownSchema: the embedded id is not known to the registry
            RegistryUnavailable: the registry could not be reached
        """
        schema_id, body = split_header(payload)
        schema = await self.registry.get_schema(schema_id)
        value = self.decode_body(body, schema, schema_id)

        if message is None:
            return DecodedRecord(value=value, schema_id=schema_id, schema_name=schema.full_name)
        return DecodedRecord(
            value=value,
            schema_id=schema_id,
            schema_name=schema.full_name,
            topic=message.topic,
            partition=message.partition,
            offset=message.offset,
            key=message.key,
            timestamp=message.timestamp,
        )

    @staticmethod
    def decode_body(body: bytes | memoryview, schema: Schema, schema_id: int) -> dict[str, Any]:
        stream = io.BytesIO(body)
        try:
            value = schemaless_reader(stream, schema.parsed)
        except (EOFError, StopIteration, ValueError, TypeError, IndexError, OverflowError, struct.error) as e:
            raise MalformedPayload(
                f"Body does not parse against schema id {schema_id}: {type(e).__name__}: {e}",
                cause=e,
                context={"schema_id": schema_id},
            ) from e

        trailing = len(body) - stream.tell()
        if trailing:
            raise MalformedPayload(
                f"{trailing} trailing byte(s) after record for schema id {schema_id}",
                context={"schema_id": schema_id},
            )
        return value


__all__ = [
    "MAGIC_BYTE",
    "HEADER_SIZE",
    "RecordCodec",
    "split_header",
    "to_mapping",
]
