"""
Core types shared across modules.

Kept in its own module so that exceptions, retry and logging can all import
ErrorCategory without importing each other.
"""

from enum import Enum


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that should retry with backoff
                   (e.g., registry 5xx, broker unreachable, timeouts)
        AUTH: Authentication failures (e.g., registry 401, SASL rejected)
        PERMANENT: Failures that will not succeed on retry
                   (e.g., record does not match schema, unknown schema id)
        CIRCUIT_OPEN: Reconnect budget exhausted, component gave up
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


__all__ = [
    "ErrorCategory",
]
