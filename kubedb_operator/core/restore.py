"""
Restore Orchestrator: one-shot initialization of a new database from a snapshot.

The caller treats any failure here as advisory. The workload stays up
uninitialized and the failure is visible as events on the database.
"""
from kubedb_operator.config.logging import get_logger
from kubedb_operator.core.context import OperatorContext
from kubedb_operator.exceptions import (
    NotFoundError,
    OperationCancelledError,
    OperatorError,
    RestoreError,
)
from kubedb_operator.models.database import ManagedDatabase, Snapshot
from kubedb_operator.services.event_recorder import EventReason
from kubedb_operator.services.infrastructure import JOB_SUCCEEDED
from kubedb_operator.utils.polling import poll_until

logger = get_logger(__name__)

SNAPSHOT_SUCCEEDED = "Succeeded"


class RestoreOrchestrator:
    """Drives snapshot lookup, credentials, restore job and its bounded wait."""

    def __init__(self, ctx: OperatorContext):
        self.ctx = ctx

    async def restore(self, db: ManagedDatabase) -> None:
        """
        Initialize ``db`` from the snapshot named in ``spec.init``.

        Raises:
            RestoreError: If the snapshot is unusable or the job fails or times out
            OperationCancelledError: If the operator shuts down while waiting
        """
        source = db.spec.snapshot_source
        if source is None:
            return

        reporter = self.ctx.reporter
        await reporter.normal(db, EventReason.INITIALIZING, f'Initializing from Snapshot: "{source.name}"')

        try:
            snapshot = await self._resolve_snapshot(db)
            credentials = await self.ctx.infrastructure.ensure_snapshot_credentials(db, snapshot)
            job_name = await self.ctx.infrastructure.create_restore_job(db, snapshot, credentials)
        except OperationCancelledError:
            raise
        except OperatorError as e:
            await reporter.warning(db, EventReason.FAILED_TO_INITIALIZE, f"Failed to initialize. Reason: {e.message}")
            raise

        logger.info("restore_job_started", name=db.name, namespace=db.namespace, job=job_name, snapshot=snapshot.name)
        await self._await_job(db, job_name)

    async def _resolve_snapshot(self, db: ManagedDatabase) -> Snapshot:
        source = db.spec.snapshot_source
        namespace = source.namespace or db.namespace
        try:
            snapshot = await self.ctx.store.get_snapshot(namespace, source.name)
        except NotFoundError:
            raise RestoreError(f'Snapshot "{namespace}/{source.name}" not found')

        phase = snapshot.status.phase
        if phase and phase != SNAPSHOT_SUCCEEDED:
            raise RestoreError(f'Snapshot "{namespace}/{source.name}" is not usable (phase {phase})')
        return snapshot

    async def _await_job(self, db: ManagedDatabase, job_name: str) -> None:
        infrastructure = self.ctx.infrastructure
        settings = self.ctx.settings
        try:
            phase = await poll_until(
                lambda: infrastructure.get_job_phase(job_name, db.namespace),
                timeout=settings.restore_timeout_seconds,
                interval=settings.restore_poll_interval_seconds,
                description=f"Restore job {db.namespace}/{job_name}",
                shutdown_event=self.ctx.shutdown_event,
            )
        except OperationCancelledError:
            raise
        except OperatorError as e:
            # Timed out, or the job could not be read (e.g. removed by a TTL controller).
            phase = None
            failure = e.message
        else:
            failure = f"restore job {job_name} failed"

        await self._cleanup_job(job_name, db.namespace)

        if phase == JOB_SUCCEEDED:
            await self.ctx.reporter.normal(db, EventReason.SUCCESSFUL_INITIALIZE, "Successfully completed initialization")
            logger.info("restore_completed", name=db.name, namespace=db.namespace, job=job_name)
            return

        await self.ctx.reporter.warning(db, EventReason.FAILED_TO_INITIALIZE, "Failed to complete initialization")
        raise RestoreError(failure, details={"job": job_name})

    async def _cleanup_job(self, job_name: str, namespace: str) -> None:
        try:
            await self.ctx.infrastructure.delete_job(job_name, namespace)
        except OperatorError as e:
            # A leftover finished job is harmless and is adopted by the next restore.
            logger.warning("restore_job_cleanup_failed", job=job_name, namespace=namespace, error=e.message)
