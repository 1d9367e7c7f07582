"""Common loop execution patterns and utilities.

Provides reusable pieces for running the publish and consume loops with
consistent:
- Shutdown handling
- Startup retry with bounded backoff
- Logging context
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from avropipe.common.metrics import record_reconnect_attempt
from core.errors.exceptions import PipelineError, ReconnectExhausted
from core.resilience.retry import RetryConfig

logger = logging.getLogger(__name__)


async def wait_for_shutdown(shutdown_event: asyncio.Event, delay: float) -> bool:
    """Sleep for ``delay`` seconds or until shutdown; True if shutdown was requested."""
    if shutdown_event.is_set():
        return True
    if delay <= 0:
        await asyncio.sleep(0)
        return shutdown_event.is_set()
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def _start_with_retry(
    start_fn: Callable[[], Awaitable[None]],
    label: str,
    retry: RetryConfig,
    shutdown_event: asyncio.Event | None = None,
) -> bool:
    """Retry an async start function with exponential backoff.

    Non-retryable errors (bad topic, bad configuration) propagate at once.
    When the retry budget is spent, raises ReconnectExhausted so the host
    can treat the component as failed.

    Args:
        start_fn: Async callable (e.g. publisher.start, subscriber.subscribe)
        label: Component name for log messages and metrics
        retry: Backoff budget
        shutdown_event: If set during backoff, give up quietly

    Returns:
        True once started, False if shutdown was requested first
    """
    for attempt in range(retry.max_attempts):
        if shutdown_event is not None and shutdown_event.is_set():
            return False
        try:
            await start_fn()
            return True
        except PipelineError as e:
            if not e.is_retryable:
                raise
            if attempt == retry.max_attempts - 1:
                logger.error(
                    f"Failed to start {label} after {retry.max_attempts} attempts, giving up",
                    extra={"error": str(e), "total_attempts": retry.max_attempts, "component": label},
                )
                raise ReconnectExhausted(label, retry.max_attempts, cause=e) from e

            delay = retry.get_delay(attempt)
            record_reconnect_attempt(label)
            logger.warning(
                f"Failed to start {label} (attempt {attempt + 1}/{retry.max_attempts}), "
                f"retrying in {delay:.1f}s",
                extra={
                    "error": str(e),
                    "attempt": attempt + 1,
                    "max_attempts": retry.max_attempts,
                    "delay_seconds": round(delay, 2),
                },
            )
            if shutdown_event is not None:
                if await wait_for_shutdown(shutdown_event, delay):
                    logger.info(f"Shutdown in progress, not retrying {label}")
                    return False
            else:
                await asyncio.sleep(delay)

    # max_attempts < 1
    raise ReconnectExhausted(label, 0)


__all__ = ["wait_for_shutdown"]
