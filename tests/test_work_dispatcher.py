"""
Tests for work item dispatch, per-key ordering and requeue.
"""
import asyncio

import pytest

from fakes import make_database
from kubedb_operator.core.outcome import ReconcileResult
from kubedb_operator.exceptions import InfrastructureError, ValidationError
from kubedb_operator.workers.work_dispatcher import (
    ACTION_ADD,
    ACTION_DELETE,
    ACTION_UPDATE,
    WorkDispatcher,
    WorkItem,
    is_retriable,
)


class ScriptedReconciler:
    """Records calls; raises the next scripted error, if any."""

    def __init__(self, errors=None, delay: float = 0):
        self.calls = []
        self.errors = list(errors or [])
        self.delay = delay

    async def _handle(self, action: str, db) -> ReconcileResult:
        self.calls.append((action, db.name))
        await asyncio.sleep(self.delay)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return ReconcileResult(message=action)

    async def on_add(self, db):
        return await self._handle("add", db)

    async def on_update(self, old, new):
        return await self._handle("update", new)

    async def on_delete(self, db):
        return await self._handle("delete", db)

    async def on_dormant_update(self, dormant):
        return await self._handle("dormant", dormant)


def make_dispatcher(reconciler, test_settings, shutdown=None) -> WorkDispatcher:
    return WorkDispatcher(reconciler, test_settings, shutdown or asyncio.Event())


@pytest.mark.asyncio
async def test_dispatch_routes_to_reconciler(test_settings):
    reconciler = ScriptedReconciler()
    dispatcher = make_dispatcher(reconciler, test_settings)

    result = await dispatcher.dispatch(WorkItem(action=ACTION_ADD, new=make_database()))

    assert result.message == "add"
    assert reconciler.calls == [("add", "demo")]


@pytest.mark.asyncio
async def test_same_key_items_run_in_submission_order(test_settings):
    reconciler = ScriptedReconciler(delay=0.01)
    dispatcher = make_dispatcher(reconciler, test_settings)
    db = make_database()

    dispatcher.submit(WorkItem(action=ACTION_ADD, new=db))
    dispatcher.submit(WorkItem(action=ACTION_UPDATE, new=db, old=db))
    dispatcher.submit(WorkItem(action=ACTION_DELETE, new=db))
    await dispatcher.drain()

    assert reconciler.calls == [("add", "demo"), ("update", "demo"), ("delete", "demo")]
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_retriable_failure_is_requeued(test_settings):
    reconciler = ScriptedReconciler(errors=[InfrastructureError("api unavailable"), None])
    dispatcher = make_dispatcher(reconciler, test_settings)

    dispatcher.submit(WorkItem(action=ACTION_ADD, new=make_database()))
    await dispatcher.drain()

    assert reconciler.calls == [("add", "demo"), ("add", "demo")]


@pytest.mark.asyncio
async def test_unexpected_error_is_requeued(test_settings):
    reconciler = ScriptedReconciler(errors=[RuntimeError("bug"), None])
    dispatcher = make_dispatcher(reconciler, test_settings)

    dispatcher.submit(WorkItem(action=ACTION_ADD, new=make_database()))
    await dispatcher.drain()

    assert len(reconciler.calls) == 2


@pytest.mark.asyncio
async def test_validation_failure_is_not_requeued(test_settings):
    reconciler = ScriptedReconciler(errors=[ValidationError("bad spec")])
    dispatcher = make_dispatcher(reconciler, test_settings)

    dispatcher.submit(WorkItem(action=ACTION_ADD, new=make_database()))
    await dispatcher.drain()

    assert reconciler.calls == [("add", "demo")]


@pytest.mark.asyncio
async def test_item_dropped_after_max_attempts(test_settings):
    reconciler = ScriptedReconciler(errors=[InfrastructureError("down")] * 10)
    dispatcher = make_dispatcher(reconciler, test_settings)

    dispatcher.submit(WorkItem(action=ACTION_ADD, new=make_database()))
    await dispatcher.drain()

    assert len(reconciler.calls) == test_settings.requeue_max_attempts


@pytest.mark.asyncio
async def test_no_work_after_shutdown(test_settings):
    shutdown = asyncio.Event()
    shutdown.set()
    reconciler = ScriptedReconciler()
    dispatcher = make_dispatcher(reconciler, test_settings, shutdown)

    result = await dispatcher.dispatch(WorkItem(action=ACTION_ADD, new=make_database()))

    assert result is None
    assert reconciler.calls == []


def test_requeue_delay_backs_off_to_ceiling(test_settings):
    dispatcher = make_dispatcher(ScriptedReconciler(), test_settings)

    assert dispatcher.requeue_delay(0) == pytest.approx(0.01)
    assert dispatcher.requeue_delay(1) == pytest.approx(0.02)
    assert dispatcher.requeue_delay(20) == pytest.approx(0.05)


def test_requeue_delay_jitter_stays_in_bounds(test_settings):
    settings = test_settings.model_copy(update={"requeue_jitter_factor": 0.5})
    dispatcher = make_dispatcher(ScriptedReconciler(), settings)

    for _ in range(50):
        assert 0.005 <= dispatcher.requeue_delay(0) <= 0.015


def test_is_retriable():
    assert is_retriable(InfrastructureError("x"))
    assert is_retriable(KeyError("x"))
    assert not is_retriable(ValidationError("x"))
