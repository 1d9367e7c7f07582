"""
Users record schema and the demo producer/consumer behaviour built on it.

Avro schema:
    {"type": "record", "name": "Users",
     "fields": [{"name": "id", "type": "int"},
                {"name": "name", "type": "string"},
                {"name": "age", "type": "int"}]}
"""

import logging
import random
from collections.abc import Iterator

from pydantic import BaseModel, Field as ModelField

from avropipe.common.types import DecodedRecord, DeliveryReceipt, PipelineMessage
from avropipe.registry.models import Field, Schema
from core.errors.exceptions import MalformedPayload

logger = logging.getLogger(__name__)

USERS = Schema(
    name="Users",
    fields=(
        Field("id", "int"),
        Field("name", "string"),
        Field("age", "int"),
    ),
)

NAMES = ("Alice", "Bob", "Charlie", "David", "Eve", "Frank", "Grace", "Henry", "Ivy", "Jack")


class UserRecord(BaseModel):
    """One Users record.

    Example:
        >>> UserRecord(id=7, name="Alice", age=30).model_dump()
        {'id': 7, 'name': 'Alice', 'age': 30}
    """

    id: int = ModelField(..., ge=-(2**31), le=2**31 - 1)
    name: str
    age: int = ModelField(..., ge=-(2**31), le=2**31 - 1)


def generate_users(rng: random.Random | None = None) -> Iterator[UserRecord]:
    """Endless stream of random users: id below 1000, age 18-97."""
    rng = rng or random.Random()
    while True:
        yield UserRecord(
            id=rng.randrange(1000),
            name=rng.choice(NAMES),
            age=rng.randrange(80) + 18,
        )


def user_key(record: UserRecord) -> str:
    return str(record.id)


def log_delivery(receipt: DeliveryReceipt) -> None:
    if receipt.succeeded:
        logger.info(
            "Sent Avro message to topic %s partition %s offset %s",
            receipt.topic,
            receipt.partition,
            receipt.offset,
            extra={"topic": receipt.topic, "partition": receipt.partition, "offset": receipt.offset},
        )
    else:
        logger.error(
            "Error sending Avro message: %s",
            receipt.error,
            extra={"topic": receipt.topic, "error_type": type(receipt.error).__name__},
        )


def log_user(record: DecodedRecord) -> None:
    user = record.value
    logger.info(
        "Received User: id=%s, name=%s, age=%s, partition=%s, offset=%s",
        user.get("id"),
        user.get("name"),
        user.get("age"),
        record.partition,
        record.offset,
        extra={
            "user_id": user.get("id"),
            "user_name": user.get("name"),
            "user_age": user.get("age"),
            "partition": record.partition,
            "offset": record.offset,
        },
    )


def log_skipped(error: Exception, message: PipelineMessage) -> None:
    if isinstance(error, MalformedPayload) and message.value is None:
        logger.warning("Received a null record value.", extra={"partition": message.partition, "offset": message.offset})
        return
    logger.warning(
        "Skipped record: %s",
        error,
        extra={
            "topic": message.topic,
            "partition": message.partition,
            "offset": message.offset,
            "error_type": type(error).__name__,
        },
    )
