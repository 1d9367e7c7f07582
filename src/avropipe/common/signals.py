"""Cross-platform signal handler setup for graceful shutdown."""

import asyncio
import logging
import signal
from collections.abc import Callable

logger = logging.getLogger(__name__)


def setup_shutdown_signal_handlers(callback: Callable[[], None]) -> None:
    """Register SIGTERM/SIGINT handlers that invoke callback on signal.

    Must be called from inside a running event loop. On Unix, uses the loop's
    add_signal_handler(); on Windows, falls back to signal.signal().
    """
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        logger.info("Received %s, initiating shutdown", sig.name)
        callback()

    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _on_signal, sig)
    except NotImplementedError:
        def _handler(signum, frame):
            # signal.signal handlers run between bytecodes, hop back onto the loop
            loop.call_soon_threadsafe(_on_signal, signal.Signals(signum))

        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)


def remove_shutdown_signal_handlers() -> None:
    """Undo setup_shutdown_signal_handlers (no-op where unsupported)."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.remove_signal_handler(sig)
        except NotImplementedError:
            signal.signal(sig, signal.SIG_DFL)
