"""
Structured logging module.

Provides JSON logging with worker and per-record context propagation.
"""

from core.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.message_context import (
    MessageLogContext,
    clear_message_context,
    get_message_context,
)
from core.logging.setup import (
    get_log_file_path,
    log_worker_startup,
    setup_logging,
)
from core.logging.utilities import log_exception, log_with_context

__all__ = [
    # Setup
    "setup_logging",
    "get_log_file_path",
    "log_worker_startup",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    # Context
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    # Per-record context
    "get_message_context",
    "clear_message_context",
    "MessageLogContext",
    # Utilities
    "log_with_context",
    "log_exception",
]
