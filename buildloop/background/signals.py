# buildloop/background/signals.py
"""
Graceful shutdown on SIGINT/SIGTERM.

The first signal runs the lifecycle's shutdown (workers release their
in-flight jobs, stores close). Later signals while that is running are
logged and ignored so a double Ctrl+C cannot interrupt the release.
"""

import asyncio
import logging
import signal
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def setup_signal_handlers(shutdown: Callable[[], Awaitable[None]]) -> Callable[[], None]:
    """
    Route shutdown signals to ``shutdown`` on the running loop.

    add_signal_handler is not available on Windows (ProactorEventLoop), where
    signal.signal() is used instead and the coroutine is scheduled with
    call_soon_threadsafe.

    Args:
        shutdown: Coroutine function stopping workers and closing stores

    Returns:
        A function that removes the handlers again
    """
    loop = asyncio.get_running_loop()
    pending: list[asyncio.Task] = []

    def _trigger(sig: signal.Signals) -> None:
        if pending and not pending[0].done():
            logger.warning(f"Received {sig.name} during shutdown, ignoring")
            return
        logger.info(f"Received {sig.name}, shutting down gracefully...")
        pending[:] = [loop.create_task(_run_shutdown())]

    async def _run_shutdown() -> None:
        await shutdown()
        logger.info("Shutdown complete")

    try:
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, _trigger, sig)
    except NotImplementedError:
        previous = {}
        for sig in SHUTDOWN_SIGNALS:
            previous[sig] = signal.signal(
                sig, lambda num, frame: loop.call_soon_threadsafe(_trigger, signal.Signals(num))
            )
        logger.info("Signal handlers registered (signal.signal fallback)")

        def _restore() -> None:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return _restore

    logger.info("Signal handlers registered (loop-based)")

    def _remove() -> None:
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    return _remove
