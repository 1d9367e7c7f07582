"""
Resilience patterns module.

Components:
    - RetryConfig: Exponential backoff configuration with equal jitter
    - @with_retry_async decorator: Retry async calls by error category
    - RECONNECT_RETRY: reconnect budget for broker connections
"""

from .retry import (
    RECONNECT_RETRY,
    RetryConfig,
    with_retry_async,
)

__all__ = [
    "RetryConfig",
    "with_retry_async",
    "RECONNECT_RETRY",
]
