"""Shared JSON serialization helpers for log output."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any


def json_serializer(obj: Any) -> Any:
    """
    ``default=`` hook for json.dumps that keeps numbers numeric.

    - datetime/date -> ISO 8601 string
    - Decimal -> float
    - Enum -> value
    - bytes -> text, undecodable bytes replaced
    - Path and everything else -> str
    """
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj).decode("utf-8", errors="replace")
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, Path):
        return str(obj)
    return str(obj)


__all__ = ["json_serializer"]
