import struct

import pytest

from avropipe.codec import HEADER_SIZE, MAGIC_BYTE, RecordCodec, split_header, to_mapping
from avropipe.common.types import PipelineMessage
from avropipe.registry.models import Field, Schema
from avropipe.schemas.users import USERS, UserRecord
from core.errors.exceptions import MalformedPayload, RegistryUnavailable, SchemaMismatch, UnknownSchema

ALICE = {"id": 1, "name": "Alice", "age": 30}
# zigzag(1)=0x02, len 5 -> 0x0a, "Alice", zigzag(30)=0x3c
ALICE_BODY = b"\x02\x0aAlice\x3c"


@pytest.fixture
def codec(registry):
    return RecordCodec(registry)


class TestSplitHeader:
    def test_parses_schema_id(self):
        schema_id, body = split_header(b"\x00\x00\x00\x01\x02" + b"xyz")
        assert schema_id == 258
        assert bytes(body) == b"xyz"

    def test_none_payload(self):
        with pytest.raises(MalformedPayload, match="null value"):
            split_header(None)

    @pytest.mark.parametrize("payload", [b"", b"\x00", b"\x00\x00\x00\x01"])
    def test_too_short(self, payload):
        with pytest.raises(MalformedPayload, match="too short") as exc_info:
            split_header(payload)
        assert exc_info.value.context["payload_size"] == len(payload)

    def test_wrong_magic_byte(self):
        with pytest.raises(MalformedPayload, match="magic byte 0x01"):
            split_header(b"\x01\x00\x00\x00\x01\x02")


class TestToMapping:
    def test_pydantic_model(self):
        assert to_mapping(UserRecord(**ALICE)) == ALICE

    def test_mapping_is_copied(self):
        record = dict(ALICE)
        result = to_mapping(record)
        assert result == record
        assert result is not record

    def test_other_types_rejected(self):
        with pytest.raises(SchemaMismatch):
            to_mapping(("Alice", 30))


class TestEncode:
    @pytest.mark.asyncio
    async def test_wire_format(self, codec, registry_server):
        payload = await codec.encode(ALICE, USERS, "users")

        schema_id = registry_server.subjects["users-value"][0]
        assert len(payload) >= HEADER_SIZE
        assert payload[0] == MAGIC_BYTE
        assert struct.unpack(">I", payload[1:5])[0] == schema_id
        assert payload[5:] == ALICE_BODY

    @pytest.mark.asyncio
    async def test_pydantic_record(self, codec):
        assert await codec.encode(UserRecord(**ALICE), USERS, "users") == await codec.encode(ALICE, USERS, "users")

    @pytest.mark.asyncio
    async def test_mismatch_never_touches_registry(self, codec, registry_server):
        with pytest.raises(SchemaMismatch):
            await codec.encode({"id": 1, "name": "Alice"}, USERS, "users")
        assert registry_server.requests == []

    @pytest.mark.asyncio
    async def test_registry_down(self, codec, registry_server):
        registry_server.down = True
        with pytest.raises(RegistryUnavailable):
            await codec.encode(ALICE, USERS, "users")

    @pytest.mark.asyncio
    async def test_registers_once_per_subject(self, codec, registry_server):
        await codec.encode(ALICE, USERS, "users")
        await codec.encode({"id": 2, "name": "Bob", "age": 41}, USERS, "users")
        assert registry_server.requests.count(("POST", "/subjects/users-value/versions")) == 1


class TestDecode:
    @pytest.mark.asyncio
    async def test_round_trip_with_fresh_cache(self, codec, registry_factory):
        payload = await codec.encode(ALICE, USERS, "users")

        reader = RecordCodec(registry_factory())
        decoded = await reader.decode(payload)

        assert decoded.value == ALICE
        assert decoded.schema_name == "Users"
        assert decoded.topic is None

    @pytest.mark.asyncio
    async def test_carries_message_position(self, codec):
        payload = await codec.encode(ALICE, USERS, "users")
        message = PipelineMessage(topic="users", partition=2, offset=17, timestamp=1234, key=b"1", value=payload)

        decoded = await codec.decode(payload, message)

        assert (decoded.topic, decoded.partition, decoded.offset) == ("users", 2, 17)
        assert decoded.key == b"1"
        assert decoded.timestamp == 1234

    @pytest.mark.asyncio
    async def test_unknown_schema_id(self, codec):
        with pytest.raises(UnknownSchema) as exc_info:
            await codec.decode(b"\x00\x00\x00\x00\x63" + ALICE_BODY)
        assert exc_info.value.schema_id == 99

    @pytest.mark.asyncio
    async def test_truncated_body(self, codec):
        payload = await codec.encode(ALICE, USERS, "users")
        with pytest.raises(MalformedPayload, match="does not parse"):
            await codec.decode(payload[:-1])

    @pytest.mark.asyncio
    async def test_trailing_bytes(self, codec):
        payload = await codec.encode(ALICE, USERS, "users")
        with pytest.raises(MalformedPayload, match="1 trailing byte"):
            await codec.decode(payload + b"\x00")

    @pytest.mark.asyncio
    async def test_registry_down_on_uncached_id(self, codec, registry_factory, registry_server):
        payload = await codec.encode(ALICE, USERS, "users")
        reader = RecordCodec(registry_factory())
        registry_server.down = True

        with pytest.raises(RegistryUnavailable):
            await reader.decode(payload)

    @pytest.mark.asyncio
    async def test_cached_id_survives_registry_outage(self, codec, registry_server):
        payload = await codec.encode(ALICE, USERS, "users")
        registry_server.down = True

        decoded = await codec.decode(payload)

        assert decoded.value == ALICE

    @pytest.mark.asyncio
    async def test_nullable_field_round_trip(self, codec):
        schema = Schema(name="Contact", fields=(Field("id", "long"), Field("email", ["null", "string"])))
        payload = await codec.encode({"id": 5, "email": None}, schema, "contacts")
        decoded = await codec.decode(payload)
        assert decoded.value == {"id": 5, "email": None}
