"""Schema registry: Avro schema model and async REST client."""

from avropipe.registry.client import SchemaRegistryClient, classify_registry_error
from avropipe.registry.models import Field, Schema

__all__ = [
    "Field",
    "Schema",
    "SchemaRegistryClient",
    "classify_registry_error",
]
