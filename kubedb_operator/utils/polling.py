"""
Bounded polling loops.

Used for the only two blocking waits the operator performs: StatefulSet
readiness and restore job completion.
"""
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from kubedb_operator.config.logging import get_logger
from kubedb_operator.exceptions import OperationCancelledError, OperationTimeoutError
from kubedb_operator.utils.shutdown import wait_or_shutdown

logger = get_logger(__name__)

T = TypeVar("T")


async def poll_until(
    check: Callable[[], Awaitable[Optional[T]]],
    *,
    timeout: float,
    interval: float,
    description: str,
    shutdown_event: Optional[asyncio.Event] = None,
) -> T:
    """
    Call ``check`` until it returns something other than None.

    Args:
        check: Probe returning None while the condition is not yet met
        timeout: Maximum seconds to wait
        interval: Seconds between probes
        description: Operation name used in errors and logs
        shutdown_event: Set when the operator is stopping

    Returns:
        The first non-None probe result

    Raises:
        OperationTimeoutError: If the deadline passes first
        OperationCancelledError: If shutdown is requested while waiting
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0

    while True:
        attempts += 1
        result = await check()
        if result is not None:
            logger.debug("poll_condition_met", operation=description, attempts=attempts)
            return result

        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning("poll_timed_out", operation=description, timeout_seconds=timeout, attempts=attempts)
            raise OperationTimeoutError(description, timeout)

        if await wait_or_shutdown(shutdown_event, min(interval, remaining)):
            logger.info("poll_cancelled", operation=description, attempts=attempts)
            raise OperationCancelledError(description)
