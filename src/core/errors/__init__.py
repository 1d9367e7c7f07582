"""
Error classification and exception hierarchy.

Provides:
- PipelineError hierarchy with an ErrorCategory on every error
- Per-record codec errors (skipped) vs connection errors (escalated)
- Classification utilities for HTTP statuses and foreign exceptions
"""

from core.errors.exceptions import (
    BackpressureTimeout,
    ConfigurationError,
    DeliveryAbandoned,
    InvalidTopic,
    MalformedPayload,
    PermanentError,
    PipelineError,
    ReconnectExhausted,
    RegistryAuthError,
    RegistryUnavailable,
    SchemaMismatch,
    TransientError,
    TransportDisconnected,
    UnknownSchema,
    classify_exception,
    classify_http_status,
    is_per_record_error,
    wrap_exception,
)
from core.types import ErrorCategory

__all__ = [
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "TransientError",
    "PermanentError",
    "ConfigurationError",
    # Codec errors
    "SchemaMismatch",
    "UnknownSchema",
    "MalformedPayload",
    # Connection errors
    "RegistryUnavailable",
    "RegistryAuthError",
    "TransportDisconnected",
    "BackpressureTimeout",
    "DeliveryAbandoned",
    "InvalidTopic",
    "ReconnectExhausted",
    # Classification utilities
    "classify_http_status",
    "classify_exception",
    "is_per_record_error",
    "wrap_exception",
]
