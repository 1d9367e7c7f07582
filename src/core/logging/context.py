"""Context variables for structured logging."""

from contextvars import ContextVar
from typing import Dict, Optional

_worker_id: ContextVar[str] = ContextVar("worker_id", default="")
_component: ContextVar[str] = ContextVar("component", default="")
_client_id: ContextVar[str] = ContextVar("client_id", default="")


def set_log_context(
    worker_id: Optional[str] = None,
    component: Optional[str] = None,
    client_id: Optional[str] = None,
) -> None:
    """Set process-wide logging context (which worker, producer or consumer)."""
    if worker_id is not None:
        _worker_id.set(worker_id)
    if component is not None:
        _component.set(component)
    if client_id is not None:
        _client_id.set(client_id)


def get_log_context() -> Dict[str, str]:
    return {
        "worker_id": _worker_id.get(),
        "component": _component.get(),
        "client_id": _client_id.get(),
    }


def clear_log_context() -> None:
    _worker_id.set("")
    _component.set("")
    _client_id.set("")
