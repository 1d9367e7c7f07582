"""
Core library: reusable, transport-agnostic components.

Modules:
    auth        - Broker and registry credential providers
    resilience  - Retry with backoff
    logging     - Structured JSON logging with message context
    errors      - Error classification and exception hierarchy
    utils       - Worker ids and JSON helpers
"""

from .types import ErrorCategory

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
]
