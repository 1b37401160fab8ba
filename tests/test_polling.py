"""
Tests for bounded waits and shutdown-aware sleeping.
"""
import asyncio
import signal

import pytest

from kubedb_operator.exceptions import OperationCancelledError, OperationTimeoutError
from kubedb_operator.utils.polling import poll_until
from kubedb_operator.utils.shutdown import ShutdownHandler, wait_or_shutdown


@pytest.mark.asyncio
async def test_poll_returns_first_result():
    results = [None, None, "done"]

    async def check():
        return results.pop(0)

    assert await poll_until(check, timeout=1, interval=0.001, description="job") == "done"
    assert results == []


@pytest.mark.asyncio
async def test_poll_times_out():
    async def never():
        return None

    with pytest.raises(OperationTimeoutError) as exc_info:
        await poll_until(never, timeout=0.05, interval=0.01, description="StatefulSet default/demo readiness")
    assert exc_info.value.operation == "StatefulSet default/demo readiness"


@pytest.mark.asyncio
async def test_poll_is_cancelled_by_shutdown():
    shutdown = asyncio.Event()

    async def check():
        shutdown.set()
        return None

    with pytest.raises(OperationCancelledError):
        await poll_until(check, timeout=10, interval=5, description="job", shutdown_event=shutdown)


@pytest.mark.asyncio
async def test_wait_or_shutdown():
    shutdown = asyncio.Event()
    assert await wait_or_shutdown(shutdown, 0.01) is False

    shutdown.set()
    assert await wait_or_shutdown(shutdown, 10) is True
    assert await wait_or_shutdown(None, 0.01) is False


@pytest.mark.asyncio
async def test_shutdown_handler_signal_sets_event():
    handler = ShutdownHandler()
    assert not handler.shutdown_event.is_set()

    handler._handle_signal(signal.SIGTERM)

    assert handler.shutdown_event.is_set()
    assert await wait_or_shutdown(handler.shutdown_event, 10) is True
