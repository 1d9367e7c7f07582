"""Avro record schema model and record conformance checks."""

import json
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Mapping

from fastavro import parse_schema
from fastavro.validation import ValidationError, validate

from core.errors.exceptions import MalformedPayload, SchemaMismatch

# Avro int is 32-bit, long is 64-bit
INT_MIN, INT_MAX = -(2**31), 2**31 - 1
LONG_MIN, LONG_MAX = -(2**63), 2**63 - 1

PRIMITIVE_TYPES = ("null", "boolean", "int", "long", "float", "double", "bytes", "string")


@dataclass(frozen=True)
class Field:
    """One field of a record schema. ``type`` is any Avro type expression."""

    name: str
    type: Any
    doc: str | None = None

    @property
    def nullable(self) -> bool:
        return self.type == "null" or (isinstance(self.type, list) and "null" in self.type)

    def to_avro(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "type": self.type}
        if self.doc:
            out["doc"] = self.doc
        return out


@dataclass(frozen=True)
class Schema:
    """
    Immutable Avro record schema.

    The registry assigns the integer id; the schema itself never changes once
    built, so the parsed fastavro form is computed once and reused.
    """

    name: str
    fields: tuple[Field, ...]
    namespace: str | None = None
    doc: str | None = None
    version: int | None = field(default=None, compare=False)

    def __post_init__(self):
        if not self.fields:
            raise SchemaMismatch(f"Schema {self.name} has no fields", schema_name=self.name)
        names = [f.name for f in self.fields]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise SchemaMismatch(
                f"Schema {self.name} has duplicate fields: {', '.join(duplicates)}",
                schema_name=self.name,
            )

    @property
    def full_name(self) -> str:
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def to_avro(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": "record", "name": self.name}
        if self.namespace:
            out["namespace"] = self.namespace
        if self.doc:
            out["doc"] = self.doc
        out["fields"] = [f.to_avro() for f in self.fields]
        return out

    def canonical(self) -> str:
        """Compact JSON text, stable across runs; used as the registry cache key."""
        return json.dumps(self.to_avro(), separators=(",", ":"), sort_keys=True)

    @cached_property
    def parsed(self) -> dict[str, Any]:
        # Fresh named-type table per schema so two schemas may reuse a record name
        return parse_schema(self.to_avro(), named_schemas={})

    @classmethod
    def from_avro(cls, definition: str | Mapping[str, Any], version: int | None = None) -> "Schema":
        """Build a Schema from Avro JSON text or an already-decoded dict."""
        if isinstance(definition, str):
            try:
                definition = json.loads(definition)
            except json.JSONDecodeError as e:
                raise MalformedPayload(f"Schema definition is not valid JSON: {e}", cause=e) from e

        if not isinstance(definition, Mapping) or definition.get("type") != "record":
            raise SchemaMismatch("Only Avro record schemas are supported")

        try:
            fields = tuple(
                Field(name=f["name"], type=f["type"], doc=f.get("doc")) for f in definition["fields"]
            )
            name = definition["name"]
        except (KeyError, TypeError) as e:
            raise SchemaMismatch(f"Record schema is missing a required attribute: {e}", cause=e) from e

        # fullname in "name" wins over "namespace"
        namespace = definition.get("namespace")
        if "." in name:
            namespace, name = name.rsplit(".", 1)

        return cls(name=name, fields=fields, namespace=namespace, doc=definition.get("doc"), version=version)

    def check_record(self, record: Mapping[str, Any]) -> None:
        """
        Raise SchemaMismatch unless ``record`` has exactly this schema's fields
        with values of the declared types.
        """
        if not isinstance(record, Mapping):
            raise SchemaMismatch(
                f"Record must be a mapping, got {type(record).__name__}",
                schema_name=self.full_name,
            )

        problems: list[str] = []
        expected = set(self.field_names)
        actual = set(record)

        for missing in sorted(expected - actual):
            problems.append(f"missing field '{missing}'")
        for extra in sorted(actual - expected, key=str):
            problems.append(f"unexpected field '{extra}'")

        for f in self.fields:
            if f.name not in record:
                continue
            value = record[f.name]
            if value is None and not f.nullable:
                problems.append(f"field '{f.name}' is null")
                continue
            problem = _check_primitive(f.name, f.type, value)
            if problem:
                problems.append(problem)

        if not problems:
            # Complex types (unions, arrays, maps, nested records) go through fastavro
            try:
                validate(dict(record), self.parsed, raise_errors=True)
            except ValidationError as e:
                problems.extend(str(err) for err in e.errors)

        if problems:
            raise SchemaMismatch(
                f"Record does not match schema {self.full_name}: {'; '.join(problems)}",
                schema_name=self.full_name,
                problems=problems,
            )


def _check_primitive(name: str, avro_type: Any, value: Any) -> str | None:
    if not isinstance(avro_type, str) or avro_type not in PRIMITIVE_TYPES:
        return None

    # bool is an int subclass; Avro keeps them apart
    is_integer = isinstance(value, int) and not isinstance(value, bool)
    type_name = type(value).__name__

    if avro_type == "int":
        if not is_integer:
            return f"field '{name}' expects int, got {type_name}"
        if not INT_MIN <= value <= INT_MAX:
            return f"field '{name}' value {value} out of 32-bit int range"
    elif avro_type == "long":
        if not is_integer:
            return f"field '{name}' expects long, got {type_name}"
        if not LONG_MIN <= value <= LONG_MAX:
            return f"field '{name}' value {value} out of 64-bit long range"
    elif avro_type in ("float", "double"):
        if not (is_integer or isinstance(value, float)):
            return f"field '{name}' expects {avro_type}, got {type_name}"
    elif avro_type == "string":
        if not isinstance(value, str):
            return f"field '{name}' expects string, got {type_name}"
    elif avro_type == "boolean":
        if not isinstance(value, bool):
            return f"field '{name}' expects boolean, got {type_name}"
    elif avro_type == "bytes":
        if not isinstance(value, (bytes, bytearray)):
            return f"field '{name}' expects bytes, got {type_name}"
    return None

