"""
Retry utilities with exception-aware handling.

Uses the exception hierarchy to decide what to retry:
- Transient errors (registry 5xx, broker unreachable): retry with backoff
- Auth errors: retry a bounded number of times
- Permanent errors (schema mismatch, unknown schema): fail immediately
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps

from core.errors.exceptions import (
    PipelineError,
    classify_exception,
    wrap_exception,
)
from core.types import ErrorCategory

logger = logging.getLogger(__name__)


def _log_retry_failure(
    func_name: str,
    wrapped: Exception,
    e: Exception,
    config: "RetryConfig",
) -> None:
    error_category = classify_exception(wrapped).value
    error_type = type(wrapped).__name__
    if isinstance(wrapped, PipelineError) and not wrapped.is_retryable:
        logger.warning(
            "Permanent error for %s, not retrying: %s",
            func_name,
            str(e)[:200],
            extra={
                "operation": func_name,
                "error_type": error_type,
                "error_category": error_category,
            },
        )
        return

    logger.error(
        "Max retries exhausted for %s: %s",
        func_name,
        str(e)[:200],
        extra={
            "operation": func_name,
            "error_type": error_type,
            "error_category": error_category,
            "max_attempts": config.max_attempts,
        },
    )


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    # If True, don't retry permanent errors even if max_attempts > 0
    respect_permanent: bool = True

    # Exception types to always retry / never retry (override classification)
    always_retry: set[type[Exception]] = field(default_factory=set)
    never_retry: set[type[Exception]] = field(default_factory=set)

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay with equal jitter to prevent thundering herd.

        Args:
            attempt: 0-indexed attempt number

        Returns:
            Delay in seconds, never above max_delay
        """
        base_delay = self.base_delay * (self.exponential_base**attempt)

        # Equal jitter: half fixed, half random
        jitter = random.uniform(0, base_delay / 2)
        delay = (base_delay / 2) + jitter

        return min(delay, self.max_delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """
        Determine if error should be retried.

        Args:
            error: The exception that occurred
            attempt: 0-indexed current attempt

        Returns:
            True if should retry
        """
        if attempt >= self.max_attempts - 1:
            return False

        if self.never_retry and isinstance(error, tuple(self.never_retry)):
            return False

        if self.always_retry and isinstance(error, tuple(self.always_retry)):
            return True

        if isinstance(error, PipelineError):
            if self.respect_permanent and not error.is_retryable:
                return False
            return error.is_retryable

        category = classify_exception(error)
        if self.respect_permanent and category == ErrorCategory.PERMANENT:
            return False

        return category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.AUTH,
            ErrorCategory.UNKNOWN,
        )


RECONNECT_RETRY = RetryConfig(max_attempts=10, base_delay=1.0, max_delay=60.0)


def with_retry_async(
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int, float], None] | None = None,
    wrap_errors: bool = True,
):
    """
    Decorator for retrying async functions with backoff.

    Args:
        config: Retry configuration (defaults to RetryConfig())
        on_retry: Callback before each retry (error, attempt, delay)
        wrap_errors: If True, wrap unknown exceptions in PipelineError

    Usage:
        @with_retry_async(config=RetryConfig(max_attempts=5))
        async def lookup_schema(schema_id):
            ...
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(config.max_attempts):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 0:
                        logger.info(
                            "Retry succeeded for %s after %d attempts",
                            func.__name__,
                            attempt + 1,
                            extra={
                                "operation": func.__name__,
                                "attempt": attempt + 1,
                                "total_attempts": config.max_attempts,
                            },
                        )

                    return result

                except Exception as e:
                    wrapped = (
                        wrap_exception(e)
                        if wrap_errors and not isinstance(e, PipelineError)
                        else e
                    )

                    if not config.should_retry(wrapped, attempt):
                        _log_retry_failure(func.__name__, wrapped, e, config)
                        if wrapped is not e:
                            raise wrapped from e
                        raise

                    delay = config.get_delay(attempt)
                    logger.warning(
                        "Retryable error for %s, will retry",
                        func.__name__,
                        extra={
                            "operation": func.__name__,
                            "attempt": attempt + 1,
                            "max_attempts": config.max_attempts,
                            "error_category": classify_exception(wrapped).value,
                            "delay_seconds": round(delay, 2),
                            "error_message": str(e)[:200],
                        },
                    )

                    if on_retry:
                        try:
                            on_retry(wrapped, attempt, delay)
                        except Exception as cb_err:
                            logger.warning(
                                "Error in on_retry callback for %s: %s",
                                func.__name__,
                                str(cb_err)[:100],
                            )

                    await asyncio.sleep(delay)

            # max_attempts < 1 means the function is never called
            raise PipelineError(f"{func.__name__} not attempted: max_attempts={config.max_attempts}")

        return wrapper

    return decorator


__all__ = [
    "RetryConfig",
    "with_retry_async",
    "RECONNECT_RETRY",
]
