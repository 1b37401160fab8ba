"""
Work dispatcher between the watch streams and the reconciler.

Each observed event becomes a ``WorkItem`` that runs as its own task under the
per-key lock, so events for one database are handled one at a time and in
order while different databases proceed in parallel. Retriable failures are
requeued with exponential backoff and jitter.
"""
import asyncio
import random
import time
from dataclasses import dataclass
from typing import Optional, Set, Union

import structlog

from kubedb_operator.config.logging import get_logger
from kubedb_operator.config.settings import Settings
from kubedb_operator.core.lock_manager import KeyedLockManager
from kubedb_operator.core.outcome import ReconcileResult
from kubedb_operator.core.reconciler import LifecycleReconciler
from kubedb_operator.exceptions import OperationCancelledError, OperatorError
from kubedb_operator.models.database import DormantDatabase, ManagedDatabase
from kubedb_operator.services import metrics
from kubedb_operator.utils.shutdown import wait_or_shutdown

logger = get_logger(__name__)

ACTION_ADD = "add"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_DORMANT = "dormant"

Resource = Union[ManagedDatabase, DormantDatabase]


@dataclass
class WorkItem:
    """One reconciliation trigger."""

    action: str
    new: Resource
    old: Optional[ManagedDatabase] = None
    attempt: int = 0

    @property
    def key(self) -> str:
        return self.new.key

    @property
    def kind(self) -> str:
        return self.new.kind


def is_retriable(error: Exception) -> bool:
    if isinstance(error, OperatorError):
        return error.retriable
    # Unexpected errors are treated as transient.
    return True


class WorkDispatcher:
    """Runs work items under per-key locks and requeues retriable failures."""

    def __init__(
        self,
        reconciler: LifecycleReconciler,
        settings: Settings,
        shutdown_event: asyncio.Event,
        locks: Optional[KeyedLockManager] = None,
    ):
        self.reconciler = reconciler
        self.settings = settings
        self.shutdown_event = shutdown_event
        self.locks = locks or KeyedLockManager(settings.max_concurrent_reconciles)
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, item: WorkItem) -> asyncio.Task:
        """Schedule ``item``; tasks for the same key queue on its lock in submission order."""
        task = asyncio.create_task(self.dispatch(item), name=f"reconcile:{item.kind}:{item.key}:{item.action}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def dispatch(self, item: WorkItem) -> Optional[ReconcileResult]:
        async with self.locks.hold(item.key):
            if self.shutdown_event.is_set():
                logger.info("work_item_skipped_shutdown", key=item.key, action=item.action)
                return None
            # Each item runs in its own task, so the binding stays local to it.
            with structlog.contextvars.bound_contextvars(reconcile_key=item.key):
                return await self._run(item)

    async def _run(self, item: WorkItem) -> Optional[ReconcileResult]:
        started = time.monotonic()
        log = logger.bind(kind=item.kind, key=item.key, action=item.action, attempt=item.attempt)
        try:
            result = await self._invoke(item)
        except OperationCancelledError:
            log.info("reconcile_cancelled_by_shutdown")
            metrics.reconcile_total.labels(kind=item.kind, action=item.action, result="cancelled").inc()
            return None
        except Exception as e:
            metrics.reconcile_total.labels(kind=item.kind, action=item.action, result="error").inc()
            log.error("reconcile_failed", error_type=type(e).__name__, error=str(e), exc_info=not isinstance(e, OperatorError))
            self._maybe_requeue(item, e)
            return None
        finally:
            metrics.reconcile_duration_seconds.labels(kind=item.kind, action=item.action).observe(
                time.monotonic() - started
            )

        metrics.reconcile_total.labels(kind=item.kind, action=item.action, result="success").inc()
        log.info(
            "reconcile_succeeded",
            message=result.message,
            advisory_failures=[o.action for o in result.advisory_failures],
        )
        return result

    async def _invoke(self, item: WorkItem) -> ReconcileResult:
        reconciler = self.reconciler
        if item.action == ACTION_ADD:
            return await reconciler.on_add(item.new)
        if item.action == ACTION_UPDATE:
            return await reconciler.on_update(item.old or item.new, item.new)
        if item.action == ACTION_DELETE:
            return await reconciler.on_delete(item.new)
        if item.action == ACTION_DORMANT:
            return await reconciler.on_dormant_update(item.new)
        raise ValueError(f"Unknown work item action {item.action!r}")

    def requeue_delay(self, attempt: int) -> float:
        """Exponential backoff with +/- jitter, capped at the configured maximum."""
        base = self.settings.requeue_base_delay_seconds * (2 ** min(attempt, 10))
        delay = min(base, self.settings.requeue_max_delay_seconds)
        jitter = self.settings.requeue_jitter_factor
        return delay * (1 + random.uniform(-jitter, jitter))

    def _maybe_requeue(self, item: WorkItem, error: Exception) -> None:
        if not is_retriable(error):
            logger.warning("work_item_dropped_not_retriable", key=item.key, action=item.action, error=str(error))
            return
        next_attempt = item.attempt + 1
        if next_attempt >= self.settings.requeue_max_attempts:
            logger.error(
                "work_item_dropped_max_attempts",
                key=item.key,
                action=item.action,
                attempts=next_attempt,
            )
            return

        delay = self.requeue_delay(item.attempt)
        metrics.requeues_total.labels(kind=item.kind).inc()
        logger.info("work_item_requeued", key=item.key, action=item.action, attempt=next_attempt, delay_seconds=round(delay, 2))
        retry = WorkItem(action=item.action, new=item.new, old=item.old, attempt=next_attempt)
        task = asyncio.create_task(self._requeue_after(retry, delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _requeue_after(self, item: WorkItem, delay: float) -> None:
        if await wait_or_shutdown(self.shutdown_event, delay):
            return
        await self.dispatch(item)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every submitted and requeued item to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
