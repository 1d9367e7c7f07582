"""Per-record context variables for structured logging."""

from contextvars import ContextVar
from typing import Any, Dict, Optional

_message_topic: ContextVar[str] = ContextVar("message_topic", default="")
_message_partition: ContextVar[int] = ContextVar("message_partition", default=-1)
_message_offset: ContextVar[int] = ContextVar("message_offset", default=-1)
_message_key: ContextVar[str] = ContextVar("message_key", default="")
_schema_id: ContextVar[int] = ContextVar("schema_id", default=-1)

_VARS: Dict[str, ContextVar] = {
    "topic": _message_topic,
    "partition": _message_partition,
    "offset": _message_offset,
    "key": _message_key,
    "schema_id": _schema_id,
}


def get_message_context() -> Dict[str, Any]:
    """
    Get current per-record logging context.

    Unset optional fields (key, schema_id) are left out.
    """
    context: Dict[str, Any] = {
        "message_topic": _message_topic.get(),
        "message_partition": _message_partition.get(),
        "message_offset": _message_offset.get(),
    }

    key = _message_key.get()
    if key:
        context["message_key"] = key

    schema_id = _schema_id.get()
    if schema_id >= 0:
        context["schema_id"] = schema_id

    return context


def clear_message_context() -> None:
    """Clear all per-record logging context variables."""
    _message_topic.set("")
    _message_partition.set(-1)
    _message_offset.set(-1)
    _message_key.set("")
    _schema_id.set(-1)


class MessageLogContext:
    """
    Context manager that scopes per-record context to one block.

    Usage:
        with MessageLogContext(topic="users", partition=0, offset=12345):
            handler(record)
    """

    def __init__(
        self,
        topic: Optional[str] = None,
        partition: Optional[int] = None,
        offset: Optional[int] = None,
        key: Optional[str] = None,
        schema_id: Optional[int] = None,
    ):
        self.new_context = {
            "topic": topic,
            "partition": partition,
            "offset": offset,
            "key": key,
            "schema_id": schema_id,
        }
        self._tokens: list = []

    def __enter__(self) -> "MessageLogContext":
        for name, value in self.new_context.items():
            if value is not None:
                self._tokens.append((_VARS[name], _VARS[name].set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False
