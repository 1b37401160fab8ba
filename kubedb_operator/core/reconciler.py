"""
Lifecycle Reconciler for ManagedDatabase and DormantDatabase.

Decides, for each observed event, which side effects are needed and in what
order:

- create:   validate, hand over to a matching dormant record or build the
            workload, optionally restore from a snapshot, then go Running
- update:   re-validate and re-ensure the workload, re-apply changed backup
            and monitor settings
- pause:    on deletion, freeze the database into a DormantDatabase and
            release its workload (or veto the deletion when DoNotPause is set)
- resume:   rebuild the ManagedDatabase from a dormant record
- wipe_out: destroy a dormant record's snapshots and volume claims

Infrastructure failures are fatal to the pass and re-raised for the work
queue to retry. Monitoring, backup scheduling and restore are advisory: their
failures are recorded in the returned ``ReconcileResult`` and as events.
"""
import json
from datetime import datetime, timezone
from typing import Awaitable, Optional, Tuple

from kubedb_operator.config.logging import get_logger
from kubedb_operator.core.context import OperatorContext
from kubedb_operator.core.matcher import SpecMatcher, canonical
from kubedb_operator.core.outcome import ReconcileResult, SideEffectOutcome, best_effort
from kubedb_operator.core.restore import RestoreOrchestrator
from kubedb_operator.core.state_machine import PhaseStateMachine
from kubedb_operator.exceptions import (
    AlreadyExistsError,
    NotFoundError,
    OperationCancelledError,
    OperatorError,
    ResumeError,
    ValidationError,
)
from kubedb_operator.models.database import (
    ANNOTATION_IGNORE,
    ANNOTATION_INIT_SPEC,
    DATABASE_KIND,
    DORMANT_KIND,
    LABEL_DATABASE_KIND,
    DatabasePhase,
    DormantDatabase,
    DormantDatabaseSpec,
    DormantDatabaseStatus,
    ManagedDatabase,
    ObjectMeta,
    Origin,
    SecretReference,
    database_selector,
    default_secret_name,
)
from kubedb_operator.services import metrics
from kubedb_operator.services.event_recorder import EventReason, Recordable

logger = get_logger(__name__)

EventSpec = Tuple[str, str]


def _same(left, right) -> bool:
    """Canonical equality for optional wire models."""
    if left is None or right is None:
        return left is None and right is None
    return canonical(left) == canonical(right)


class LifecycleReconciler:
    """Reconciles ManagedDatabase and DormantDatabase events."""

    def __init__(
        self,
        ctx: OperatorContext,
        matcher: Optional[SpecMatcher] = None,
        restorer: Optional[RestoreOrchestrator] = None,
    ):
        self.ctx = ctx
        self.matcher = matcher or SpecMatcher(ctx.store, ctx.reporter)
        self.restorer = restorer or RestoreOrchestrator(ctx)

    @property
    def reporter(self):
        return self.ctx.reporter

    # ------------------------------------------------------------------
    # Watch entry points
    # ------------------------------------------------------------------

    async def on_add(self, db: ManagedDatabase) -> ReconcileResult:
        """First observation of a ManagedDatabase (including after an operator restart)."""
        latest = await self._latest(db)
        if latest is None:
            return ReconcileResult(message="already deleted")
        if latest.phase == DatabasePhase.RUNNING:
            return await self.update(latest, latest)
        return await self.create(latest)

    async def on_update(self, old: ManagedDatabase, new: ManagedDatabase) -> ReconcileResult:
        """A ManagedDatabase changed; status-only writes are ignored."""
        if _same(old.spec, new.spec):
            logger.debug("spec_unchanged", name=new.name, namespace=new.namespace)
            return ReconcileResult(message="spec unchanged")

        latest = await self._latest(new)
        if latest is None:
            return ReconcileResult(message="already deleted")
        if latest.phase != DatabasePhase.RUNNING:
            # A create pass that never finished (e.g. rejected spec now fixed).
            return await self.create(latest)
        return await self.update(old, latest)

    async def on_delete(self, db: ManagedDatabase) -> ReconcileResult:
        return await self.pause(db)

    async def on_dormant_update(self, dormant: DormantDatabase) -> ReconcileResult:
        """A DormantDatabase was added or changed; resume wins over wipe-out."""
        if dormant.spec.resume:
            return await self.resume(dormant)
        if dormant.spec.wipe_out and dormant.phase != DatabasePhase.WIPED_OUT:
            if dormant.phase == DatabasePhase.PAUSING:
                # Picked up again when the pause finishes and the phase changes.
                logger.info("wipe_out_deferred_until_paused", name=dormant.name, namespace=dormant.namespace)
                return ReconcileResult(message="wipe-out deferred until paused")
            return await self.wipe_out(dormant)
        return ReconcileResult(message="nothing to do")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, db: ManagedDatabase) -> ReconcileResult:
        result = ReconcileResult()
        logger.info("database_create_started", name=db.name, namespace=db.namespace, phase=db.phase)

        db = await self.reporter.set_phase(db, DatabasePhase.CREATING)
        await self._validate(db)

        if await self.matcher.matches(db):
            await self._hand_over_to_dormant(db)
            logger.info("database_matched_dormant", name=db.name, namespace=db.namespace)
            return ReconcileResult(message="handed over to DormantDatabase")

        await self.reporter.normal(db, EventReason.CREATING, "Creating Kubernetes objects")

        governing = self.ctx.settings.governing_service_name
        try:
            await self.ctx.infrastructure.ensure_governing_service(db.namespace)
        except OperatorError as e:
            await self.reporter.warning(
                db,
                EventReason.FAILED_TO_CREATE,
                f'Failed to create Service: "{governing}". Reason: {e.message}',
            )
            raise

        db = await self._ensure_database_secret(db)
        await self._ensure_service(db)
        await self._ensure_stateful_set(db, wait_ready=True)

        await self.reporter.normal(db, EventReason.SUCCESSFUL_CREATE, f"Successfully created {DATABASE_KIND}")

        if db.spec.snapshot_source is not None:
            db = await self.reporter.set_phase(db, DatabasePhase.INITIALIZING)
            # The orchestrator reports its own outcome events.
            await self._advisory(result, db, "restore", self.restorer.restore(db))

        db = await self.reporter.set_phase(db, DatabasePhase.RUNNING)

        await self._ensure_backup_schedule(result, db)

        if db.spec.monitor is not None:
            await self._advisory(
                result,
                db,
                "monitor_add",
                self.ctx.monitor.add(db),
                on_failure=(EventReason.FAILED_TO_CREATE, "Failed to add monitoring system."),
                on_success=(EventReason.SUCCESSFUL_MONITOR_ADD, "Successfully added monitoring system."),
            )

        result.message = "running"
        logger.info(
            "database_create_completed",
            name=db.name,
            namespace=db.namespace,
            advisory_failures=[o.action for o in result.advisory_failures],
        )
        return result

    async def _hand_over_to_dormant(self, db: ManagedDatabase) -> None:
        """
        The new resource duplicates a paused database: delete it (marked so the
        deletion is not treated as a pause) and flag the dormant record for resume.
        """
        def mark_ignored(current: ManagedDatabase) -> ManagedDatabase:
            current.metadata.annotations[ANNOTATION_IGNORE] = f'Resuming from DormantDatabase "{db.name}"'
            return current

        try:
            await self.reporter.patch_database(db, mark_ignored, description="ignore")
            await self.ctx.store.delete_database(db.namespace, db.name)
        except OperatorError as e:
            raise ResumeError(
                f'Failed to resume {DATABASE_KIND} "{db.name}" from DormantDatabase "{db.name}". Error: {e.message}'
            )

        def request_resume(current: DormantDatabase) -> DormantDatabase:
            current.spec.resume = True
            return current

        try:
            dormant = await self.ctx.store.get_dormant(db.namespace, db.name)
            await self.reporter.patch_dormant(dormant, request_resume, description="resume")
        except OperatorError as e:
            await self.reporter.warning(db, EventReason.FAILED_TO_UPDATE, e.message)
            raise

    async def _ensure_backup_schedule(self, result: ReconcileResult, db: ManagedDatabase) -> SideEffectOutcome:
        if db.spec.backup_schedule is not None:
            return await self._advisory(
                result,
                db,
                "backup_schedule",
                self.ctx.backups.schedule(db, db.spec.backup_schedule),
                on_failure=(EventReason.FAILED_TO_SCHEDULE, "Failed to schedule snapshot."),
            )
        return await self._advisory(result, db, "backup_stop", self.ctx.backups.stop(db))

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(self, old: ManagedDatabase, new: ManagedDatabase) -> ReconcileResult:
        result = ReconcileResult()
        logger.info("database_update_started", name=new.name, namespace=new.namespace)

        await self._validate(new)

        new = await self._ensure_database_secret(new)
        await self._ensure_service(new)
        # Readiness is only waited for on creation.
        await self._ensure_stateful_set(new, wait_ready=False)

        if not _same(old.spec.backup_schedule, new.spec.backup_schedule):
            await self._ensure_backup_schedule(result, new)

        if not _same(old.spec.monitor, new.spec.monitor):
            await self._advisory(
                result,
                new,
                "monitor_update",
                self.ctx.monitor.update(old, new),
                on_failure=(EventReason.FAILED_TO_UPDATE, "Failed to update monitoring system."),
                on_success=(EventReason.SUCCESSFUL_MONITOR_UPDATE, "Successfully updated monitoring system."),
            )

        result.message = "updated"
        return result

    # ------------------------------------------------------------------
    # Pause
    # ------------------------------------------------------------------

    async def pause(self, db: ManagedDatabase) -> ReconcileResult:
        result = ReconcileResult()

        if ANNOTATION_IGNORE in db.metadata.annotations:
            await self.reporter.normal(db, EventReason.IGNORED, db.metadata.annotations[ANNOTATION_IGNORE])
            logger.info("pause_ignored", name=db.name, namespace=db.namespace)
            return ReconcileResult(message="ignored")

        await self.reporter.normal(db, EventReason.PAUSING, f"Pausing {DATABASE_KIND}")

        if db.spec.do_not_pause:
            await self.reporter.warning(db, EventReason.FAILED_TO_PAUSE, f'{DATABASE_KIND} "{db.name}" is locked.')
            await self._recreate(db)
            return ReconcileResult(message="deletion vetoed")

        try:
            dormant = await self._create_dormant(db)
        except OperatorError as e:
            await self.reporter.warning(
                db,
                EventReason.FAILED_TO_CREATE,
                f'Failed to create DormantDatabase: "{db.name}". Reason: {e.message}',
            )
            raise
        await self.reporter.normal(db, EventReason.SUCCESSFUL_CREATE, f'Successfully created DormantDatabase: "{db.name}"')

        await self._advisory(
            result,
            db,
            "backup_stop",
            self.ctx.backups.stop(db),
            on_failure=(EventReason.FAILED_TO_DELETE, "Failed to stop backup schedule."),
        )

        if db.spec.monitor is not None:
            await self._advisory(
                result,
                db,
                "monitor_delete",
                self.ctx.monitor.delete(db),
                on_failure=(EventReason.FAILED_TO_DELETE, "Failed to delete monitoring system."),
                on_success=(EventReason.SUCCESSFUL_MONITOR_DELETE, "Successfully deleted monitoring system."),
            )

        await self._release_workload(dormant)

        dormant = await self.reporter.set_dormant_phase(dormant, DatabasePhase.PAUSED)
        await self.reporter.normal(dormant, EventReason.SUCCESSFUL_PAUSE, "Successfully paused DormantDatabase")
        result.message = "paused"
        return result

    async def _recreate(self, db: ManagedDatabase) -> None:
        """Undo a vetoed deletion with the last known spec and status."""
        recreated = ManagedDatabase(
            metadata=db.metadata.fresh_copy(),
            spec=db.spec.model_copy(deep=True),
            status=db.status.model_copy(deep=True),
        )
        try:
            await self.ctx.store.create_database(recreated)
        except AlreadyExistsError:
            logger.info("database_already_recreated", name=db.name, namespace=db.namespace)
        except OperatorError as e:
            await self.reporter.warning(
                db,
                EventReason.FAILED_TO_CREATE,
                f'Failed to recreate {DATABASE_KIND}: "{db.name}". Reason: {e.message}',
            )
            raise

    async def _create_dormant(self, db: ManagedDatabase) -> DormantDatabase:
        PhaseStateMachine.validate_transition(DORMANT_KIND, None, DatabasePhase.PAUSING, db.key)

        origin_spec = db.spec.model_copy(deep=True)
        origin_spec.init = None
        annotations = {}
        if db.spec.init is not None:
            annotations[ANNOTATION_INIT_SPEC] = json.dumps(db.spec.init.dump(), sort_keys=True)

        dormant = DormantDatabase(
            metadata=ObjectMeta(
                name=db.name,
                namespace=db.namespace,
                labels={LABEL_DATABASE_KIND: DATABASE_KIND},
                annotations=annotations,
            ),
            spec=DormantDatabaseSpec(origin=Origin(metadata=db.metadata.fresh_copy(), spec=origin_spec)),
            status=DormantDatabaseStatus(phase=DatabasePhase.PAUSING, creation_time=datetime.now(timezone.utc)),
        )
        try:
            created = await self.ctx.store.create_dormant(dormant)
        except AlreadyExistsError:
            # A previous pass of this pause got this far.
            existing = await self.ctx.store.get_dormant(db.namespace, db.name)
            if existing.phase not in (DatabasePhase.PAUSING, DatabasePhase.PAUSED):
                raise
            logger.info("dormant_database_reused", name=db.name, namespace=db.namespace, phase=existing.phase)
            return existing

        metrics.phase_transitions_total.labels(kind=DORMANT_KIND, phase=DatabasePhase.PAUSING.value).inc()
        return created

    async def _release_workload(self, dormant: DormantDatabase) -> None:
        """Delete the Service, StatefulSet and RBAC objects; none of them may leak."""
        name = dormant.offshoot_name
        namespace = dormant.namespace
        steps = (
            ("Service", self.ctx.infrastructure.delete_service),
            ("StatefulSet", self.ctx.infrastructure.delete_stateful_set),
            ("RBAC", self.ctx.infrastructure.delete_rbac),
        )
        for resource, delete in steps:
            try:
                await delete(name, namespace)
            except OperatorError as e:
                logger.error("workload_release_failed", resource=resource, name=name, namespace=namespace, error=e.message)
                await self.reporter.warning(
                    dormant,
                    EventReason.FAILED_TO_DELETE,
                    f'Failed to delete {resource} "{name}". Reason: {e.message}',
                )
                raise

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def resume(self, dormant: DormantDatabase) -> ReconcileResult:
        """
        Rebuild the ManagedDatabase, then delete the dormant record.

        The record stays (phase Resuming) until the database exists, so a failed
        pass can be retried from the same origin. A pass on a record already
        in Resuming picks up where the earlier one stopped.
        """
        latest = await self.ctx.store.find_dormant(dormant.namespace, dormant.name)
        if latest is None or not latest.spec.resume:
            # Finished by an earlier pass, or an echo of our own phase write.
            logger.info("resume_not_pending", name=dormant.name, namespace=dormant.namespace)
            return ReconcileResult(message="nothing to resume")
        dormant = latest

        origin = dormant.spec.origin
        if origin.spec.init is not None:
            await self._resume_failed(dormant, "do not support InitSpec in spec.origin")

        continuing = dormant.phase == DatabasePhase.RESUMING
        if not continuing:
            if await self.ctx.store.database_exists(dormant.namespace, dormant.name):
                await self._resume_failed(dormant, f'{DATABASE_KIND} "{dormant.name}" already exists')
            await self.reporter.normal(dormant, EventReason.RESUMING, "Resuming DormantDatabase")
            dormant = await self.reporter.set_dormant_phase(dormant, DatabasePhase.RESUMING)

        db = self.build_resumed_database(dormant)
        try:
            created = await self.ctx.store.create_database(db)
        except AlreadyExistsError:
            if not continuing:
                await self._resume_failed(dormant, f'{DATABASE_KIND} "{dormant.name}" already exists')
            logger.info("resumed_database_already_created", name=db.name, namespace=db.namespace)
            created = await self.ctx.store.get_database(db.namespace, db.name)
        except OperatorError as e:
            logger.error(
                "resume_create_failed",
                name=db.name,
                namespace=db.namespace,
                error=e.message,
                database=db.dump(),
            )
            await self.reporter.warning(dormant, EventReason.FAILED_TO_RESUME, e.message)
            raise ResumeError(f'Failed to create {DATABASE_KIND} "{db.name}" from DormantDatabase: {e.message}')

        try:
            await self.ctx.store.delete_dormant(dormant.namespace, dormant.name)
        except NotFoundError:
            pass
        except OperatorError as e:
            await self.reporter.warning(
                dormant,
                EventReason.FAILED_TO_DELETE,
                f'Failed to delete DormantDatabase "{dormant.name}". Reason: {e.message}',
            )
            raise

        await self.reporter.normal(created, EventReason.SUCCESSFUL_RESUME, "Successfully resumed from DormantDatabase")
        logger.info("database_resumed", name=db.name, namespace=db.namespace)
        return ReconcileResult(message="resumed")

    async def _resume_failed(self, dormant: DormantDatabase, message: str) -> None:
        await self.reporter.warning(dormant, EventReason.FAILED_TO_RESUME, message)
        raise ResumeError(message)

    @staticmethod
    def build_resumed_database(dormant: DormantDatabase) -> ManagedDatabase:
        """ManagedDatabase rebuilt from the origin; dormant annotations win on collision."""
        origin = dormant.spec.origin
        metadata = origin.metadata.fresh_copy()
        metadata.annotations = {**origin.metadata.annotations, **dormant.metadata.annotations}
        return ManagedDatabase(metadata=metadata, spec=origin.spec.model_copy(deep=True))

    # ------------------------------------------------------------------
    # Wipe out
    # ------------------------------------------------------------------

    async def wipe_out(self, dormant: DormantDatabase) -> ReconcileResult:
        """
        Delete every Snapshot and PersistentVolumeClaim labelled for this
        database. Absent objects are skipped, so running it again is harmless.
        Secrets are left in place.
        """
        first_pass = dormant.phase != DatabasePhase.WIPED_OUT
        if first_pass:
            await self.reporter.normal(dormant, EventReason.WIPING_OUT, "Wiping out DormantDatabase")
            dormant = await self.reporter.set_dormant_phase(dormant, DatabasePhase.WIPING_OUT)

        labels = database_selector(dormant.name)
        store = self.ctx.store
        try:
            for name in await store.list_snapshot_names(dormant.namespace, labels):
                await self._delete_if_present(store.delete_snapshot, dormant.namespace, name)
            for name in await store.list_pvc_names(dormant.namespace, labels):
                await self._delete_if_present(store.delete_pvc, dormant.namespace, name)
        except OperatorError as e:
            await self.reporter.warning(
                dormant,
                EventReason.FAILED_TO_WIPE_OUT,
                f"Failed to wipe out DormantDatabase. Reason: {e.message}",
            )
            raise

        if first_pass:
            dormant = await self.reporter.set_dormant_phase(dormant, DatabasePhase.WIPED_OUT)
            await self.reporter.normal(dormant, EventReason.SUCCESSFUL_WIPE_OUT, "Successfully wiped out DormantDatabase")
        return ReconcileResult(message="wiped out")

    @staticmethod
    async def _delete_if_present(delete, namespace: str, name: str) -> None:
        try:
            await delete(namespace, name)
        except NotFoundError:
            logger.debug("already_deleted", name=name, namespace=namespace)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _latest(self, db: ManagedDatabase) -> Optional[ManagedDatabase]:
        try:
            return await self.ctx.store.get_database(db.namespace, db.name)
        except NotFoundError:
            return None

    async def _validate(self, db: ManagedDatabase) -> None:
        try:
            await self.ctx.validator.validate(db)
        except ValidationError as e:
            await self.reporter.warning(db, EventReason.INVALID, e.message)
            raise
        await self.reporter.normal(db, EventReason.SUCCESSFUL_VALIDATE, f"Successfully validate {DATABASE_KIND}")

    async def _ensure_database_secret(self, db: ManagedDatabase) -> ManagedDatabase:
        """Default the secret reference to ``<name>-admin-auth`` and make sure the Secret exists."""
        if db.spec.database_secret is None:
            secret_name = default_secret_name(db.name)

            def set_reference(current: ManagedDatabase) -> ManagedDatabase:
                if current.spec.database_secret is None:
                    current.spec.database_secret = SecretReference(secret_name=secret_name)
                return current

            db = await self.reporter.patch_database(db, set_reference, description="database-secret")

        try:
            await self.ctx.infrastructure.ensure_database_secret(db)
        except OperatorError as e:
            await self.reporter.warning(db, EventReason.FAILED_TO_CREATE, f"Failed to create Secret. Reason: {e.message}")
            raise
        return db

    async def _ensure_service(self, db: ManagedDatabase) -> None:
        try:
            await self.ctx.infrastructure.ensure_service(db)
        except OperatorError as e:
            await self.reporter.warning(db, EventReason.FAILED_TO_CREATE, f"Failed to create Service. Reason: {e.message}")
            raise

    async def _ensure_stateful_set(self, db: ManagedDatabase, wait_ready: bool) -> bool:
        infrastructure = self.ctx.infrastructure
        try:
            await infrastructure.ensure_rbac(db)
            created = await infrastructure.ensure_stateful_set(db)
        except OperatorError as e:
            await self.reporter.warning(
                db, EventReason.FAILED_TO_CREATE, f"Failed to create StatefulSet. Reason: {e.message}"
            )
            raise

        if not wait_ready:
            return created

        try:
            await infrastructure.wait_for_stateful_set_ready(db.offshoot_name, db.namespace, self.ctx.shutdown_event)
        except OperationCancelledError:
            raise
        except OperatorError as e:
            await self.reporter.warning(
                db, EventReason.FAILED_TO_START, f"Failed to create StatefulSet. Reason: {e.message}"
            )
            raise
        await self.reporter.normal(db, EventReason.SUCCESSFUL_CREATE, "Successfully created StatefulSet")
        return created

    async def _advisory(
        self,
        result: ReconcileResult,
        resource: Recordable,
        action: str,
        operation: Awaitable,
        on_failure: Optional[EventSpec] = None,
        on_success: Optional[EventSpec] = None,
    ) -> SideEffectOutcome:
        """Run a best-effort side effect and report its outcome without raising."""
        outcome = result.record(
            await best_effort(action, operation, name=resource.name, namespace=resource.namespace)
        )
        if outcome.succeeded:
            if on_success is not None:
                await self.reporter.normal(resource, *on_success)
            return outcome

        metrics.advisory_failures_total.labels(action=action).inc()
        if on_failure is not None:
            reason, message = on_failure
            await self.reporter.warning(resource, reason, f"{message} Reason: {outcome.error}")
        return outcome
