"""
Shutdown signal handling for graceful operator termination.
"""
import asyncio
import signal
from typing import Optional

from kubedb_operator.config.logging import get_logger

logger = get_logger(__name__)


async def wait_or_shutdown(shutdown_event: Optional[asyncio.Event], delay: float) -> bool:
    """
    Wait for delay seconds or until shutdown is requested.

    Args:
        shutdown_event: Event set when the operator is stopping (None waits the full delay)
        delay: Seconds to wait

    Returns:
        True if shutdown was requested, False if wait completed normally
    """
    if shutdown_event is None:
        await asyncio.sleep(delay)
        return False

    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
        return True  # Shutdown requested
    except asyncio.TimeoutError:
        return False  # Wait completed normally


class ShutdownHandler:
    """Sets a shutdown event on SIGINT/SIGTERM so loops can finish cleanly."""

    def __init__(self, shutdown_event: Optional[asyncio.Event] = None):
        self.shutdown_event = shutdown_event or asyncio.Event()

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        """Install signal handlers on the running loop."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal, sig)
        logger.info("shutdown_handler_installed")

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        self.shutdown_event.set()
