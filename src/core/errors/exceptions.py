"""
Exception hierarchy for the avro pipeline.

Every error carries an ErrorCategory so callers can decide between
"report and skip this record" and "reconnect and retry".
"""

from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.AUTH,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class ConfigurationError(PermanentError):
    """Invalid or incomplete configuration."""

    pass


# =============================================================================
# Codec Errors (per-record, never escalated)
# =============================================================================


class SchemaMismatch(PermanentError):
    """Record fields or value types do not match the schema."""

    def __init__(
        self,
        message: str,
        schema_name: str | None = None,
        problems: list[str] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, cause, {"schema_name": schema_name})
        self.schema_name = schema_name
        self.problems = problems or []


class UnknownSchema(PermanentError):
    """Embedded schema id cannot be resolved by the registry."""

    def __init__(self, schema_id: int, cause: Exception | None = None):
        super().__init__(f"Schema id {schema_id} is not registered", cause, {"schema_id": schema_id})
        self.schema_id = schema_id


class MalformedPayload(PermanentError):
    """Payload is truncated, has a bad header, or does not parse against its schema."""

    pass


# =============================================================================
# Connection Errors (escalated: disconnect, back off, reconnect)
# =============================================================================


class RegistryUnavailable(TransientError):
    """Schema registry unreachable, timed out, or returned 5xx."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.status_code = status_code


class RegistryAuthError(RegistryUnavailable):
    """Registry rejected our credentials (401/403)."""

    category = ErrorCategory.AUTH


class TransportDisconnected(TransientError):
    """Connection to the log transport was lost."""

    pass


class BackpressureTimeout(TransientError):
    """Producer send buffer stayed full past the configured timeout."""

    pass


class DeliveryAbandoned(PipelineError):
    """Message was still unflushed when the producer was forced to shut down."""

    pass


class InvalidTopic(PermanentError):
    """None of the requested topics exist and the subscription was rejected."""

    def __init__(self, topics: list[str], cause: Exception | None = None):
        super().__init__(f"No such topic(s): {', '.join(topics)}", cause, {"topics": topics})
        self.topics = topics


class ReconnectExhausted(PipelineError):
    """Reconnection gave up after its retry budget; fatal for the component."""

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(self, component: str, attempts: int, cause: Exception | None = None):
        super().__init__(
            f"{component} failed to reconnect after {attempts} attempts",
            cause,
            {"component": component, "attempts": attempts},
        )
        self.component = component
        self.attempts = attempts


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_http_status(status_code: int) -> ErrorCategory:
    """Classify HTTP status code into error category."""
    if 200 <= status_code < 300:
        return ErrorCategory.UNKNOWN  # Not an error

    if status_code in (401, 403):
        return ErrorCategory.AUTH

    if status_code in (408, 429):
        return ErrorCategory.TRANSIENT

    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT

    if status_code >= 500:
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def classify_exception(exc: Exception) -> ErrorCategory:
    """Classify an exception into error category."""
    if isinstance(exc, PipelineError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    connection_markers = (
        "connectionerror",
        "connection refused",
        "connection reset",
        "nodenotready",
        "no route to host",
        "name resolution",
        "broken pipe",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    if "authentication" in exc_str or "unauthorized" in exc_str:
        return ErrorCategory.AUTH

    return ErrorCategory.UNKNOWN


def is_per_record_error(exc: Exception) -> bool:
    """True for errors that affect one record only and are skipped, not escalated."""
    return isinstance(exc, (SchemaMismatch, UnknownSchema, MalformedPayload))


def wrap_exception(exc: Exception, default_message: str | None = None) -> PipelineError:
    """Wrap a foreign exception in the PipelineError subclass matching its category."""
    if isinstance(exc, PipelineError):
        return exc

    message = default_message or str(exc) or type(exc).__name__
    category = classify_exception(exc)
    if category == ErrorCategory.TRANSIENT:
        return TransientError(message, cause=exc)
    if category == ErrorCategory.PERMANENT:
        return PermanentError(message, cause=exc)
    wrapped = PipelineError(message, cause=exc)
    wrapped.category = category
    return wrapped
