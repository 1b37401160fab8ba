"""
Status/Event Reporter.

Phase transitions are applied as read-modify-write cycles through
``compare_and_swap``: fetch the stored object, apply a pure mutation, write it
back with its resourceVersion, and start over on a conflict. Every change is
checked against the phase state machine before it is written.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

from kubedb_operator.config.logging import get_logger
from kubedb_operator.config.settings import Settings
from kubedb_operator.core.state_machine import PhaseStateMachine
from kubedb_operator.exceptions import OperatorError
from kubedb_operator.models.database import (
    DATABASE_KIND,
    DORMANT_KIND,
    DatabasePhase,
    DormantDatabase,
    ManagedDatabase,
)
from kubedb_operator.services import metrics
from kubedb_operator.services.event_recorder import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    EventReason,
    EventRecorder,
    Recordable,
)
from kubedb_operator.services.resource_store import ResourceStore
from kubedb_operator.utils.retry import compare_and_swap

logger = get_logger(__name__)

DatabaseMutation = Callable[[ManagedDatabase], ManagedDatabase]
DormantMutation = Callable[[DormantDatabase], DormantDatabase]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StatusReporter:
    """Conflict-safe status writes plus the event audit trail."""

    def __init__(self, store: ResourceStore, recorder: EventRecorder, settings: Settings):
        self.store = store
        self.recorder = recorder
        self.settings = settings

    def _cas_options(self, description: str) -> dict:
        return {
            "max_attempts": self.settings.status_patch_max_attempts,
            "backoff_min": self.settings.status_patch_backoff_min_seconds,
            "backoff_max": self.settings.status_patch_backoff_max_seconds,
            "description": description,
        }

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def normal(self, resource: Recordable, reason: str, message: str) -> None:
        await self.recorder.record(resource, EVENT_TYPE_NORMAL, reason, message)

    async def warning(self, resource: Recordable, reason: str, message: str) -> None:
        await self.recorder.record(resource, EVENT_TYPE_WARNING, reason, message)

    # ------------------------------------------------------------------
    # Generic read-modify-write
    # ------------------------------------------------------------------

    async def patch_database(
        self, db: ManagedDatabase, mutate: DatabaseMutation, description: str = "patch"
    ) -> ManagedDatabase:
        """Apply ``mutate`` to the stored copy of ``db``, retrying on conflicts."""
        def apply(current: ManagedDatabase) -> ManagedDatabase:
            return mutate(current.model_copy(deep=True))

        return await compare_and_swap(
            lambda: self.store.get_database(db.namespace, db.name),
            apply,
            self.store.replace_database,
            **self._cas_options(f"{DATABASE_KIND} {db.key} {description}"),
        )

    async def patch_dormant(
        self, dormant: DormantDatabase, mutate: DormantMutation, description: str = "patch"
    ) -> DormantDatabase:
        """Apply ``mutate`` to the stored copy of ``dormant``, retrying on conflicts."""
        def apply(current: DormantDatabase) -> DormantDatabase:
            return mutate(current.model_copy(deep=True))

        return await compare_and_swap(
            lambda: self.store.get_dormant(dormant.namespace, dormant.name),
            apply,
            self.store.replace_dormant,
            **self._cas_options(f"{DORMANT_KIND} {dormant.key} {description}"),
        )

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    async def set_phase(
        self, db: ManagedDatabase, phase: DatabasePhase, reason: Optional[str] = None
    ) -> ManagedDatabase:
        """
        Move a ManagedDatabase to ``phase``.

        Entering Creating also stamps ``status.creationTime``. A failed write is
        reported as a FailedToUpdate event and re-raised.
        """
        def mutate(current: ManagedDatabase) -> ManagedDatabase:
            PhaseStateMachine.validate_transition(DATABASE_KIND, current.status.phase, phase, current.key)
            if phase == DatabasePhase.CREATING and current.status.phase != phase:
                current.status.creation_time = _now()
            current.status.phase = phase
            current.status.reason = reason
            return current

        try:
            updated = await self.patch_database(db, mutate, description=f"phase={phase.value}")
        except OperatorError as e:
            await self.warning(db, EventReason.FAILED_TO_UPDATE, e.message)
            raise

        metrics.phase_transitions_total.labels(kind=DATABASE_KIND, phase=phase.value).inc()
        logger.info("database_phase_set", name=db.name, namespace=db.namespace, phase=phase.value)
        return updated

    async def set_dormant_phase(
        self, dormant: DormantDatabase, phase: DatabasePhase, reason: Optional[str] = None
    ) -> DormantDatabase:
        """Move a DormantDatabase to ``phase``, stamping the matching timestamp."""
        def mutate(current: DormantDatabase) -> DormantDatabase:
            PhaseStateMachine.validate_transition(DORMANT_KIND, current.status.phase, phase, current.key)
            if current.status.phase != phase:
                if phase == DatabasePhase.PAUSING:
                    current.status.creation_time = _now()
                elif phase == DatabasePhase.PAUSED:
                    current.status.paused_time = _now()
                elif phase == DatabasePhase.WIPED_OUT:
                    current.status.wiped_out_time = _now()
            current.status.phase = phase
            current.status.reason = reason
            return current

        try:
            updated = await self.patch_dormant(dormant, mutate, description=f"phase={phase.value}")
        except OperatorError as e:
            await self.warning(dormant, EventReason.FAILED_TO_UPDATE, e.message)
            raise

        metrics.phase_transitions_total.labels(kind=DORMANT_KIND, phase=phase.value).inc()
        logger.info("dormant_phase_set", name=dormant.name, namespace=dormant.namespace, phase=phase.value)
        return updated
