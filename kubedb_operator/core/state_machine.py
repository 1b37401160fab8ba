"""
Phase State Machine for ManagedDatabase and DormantDatabase

Every phase written by the operator goes through this module, so a bug in the
reconciler cannot move a resource backwards or out of a terminal phase.

ManagedDatabase:
- (none) -> CREATING
- CREATING -> INITIALIZING -> RUNNING, or CREATING -> RUNNING
- CREATING may be re-entered from INITIALIZING when a create pass is retried,
  never from RUNNING

DormantDatabase:
- (none) -> PAUSING -> PAUSED
- PAUSING/PAUSED -> RESUMING (record is then deleted)
- PAUSED -> WIPING_OUT -> WIPED_OUT (terminal); volumes are only wiped once
  the workload using them is gone

Writing the phase a resource already has is always allowed and is a no-op.

Usage:
    >>> from kubedb_operator.core.state_machine import PhaseStateMachine
    >>> PhaseStateMachine.can_transition(
    ...     "ManagedDatabase", DatabasePhase.CREATING, DatabasePhase.RUNNING
    ... )
    True
"""

from typing import Dict, Optional, Set

import structlog

from kubedb_operator.exceptions import InvalidTransitionError
from kubedb_operator.models.database import DATABASE_KIND, DORMANT_KIND, DatabasePhase

logger = structlog.get_logger(__name__)

Transitions = Dict[Optional[DatabasePhase], Set[DatabasePhase]]


class PhaseStateMachine:
    """
    Allowed phase graph per resource kind.

    ``None`` stands for a resource whose status has never been written.
    """

    DATABASE_TRANSITIONS: Transitions = {
        None: {
            DatabasePhase.CREATING,
        },
        DatabasePhase.CREATING: {
            DatabasePhase.INITIALIZING,  # Snapshot restore requested
            DatabasePhase.RUNNING,       # Workload ready
        },
        DatabasePhase.INITIALIZING: {
            DatabasePhase.CREATING,      # Interrupted create pass retried
            DatabasePhase.RUNNING,       # Restore finished (or failed, advisory)
        },
        DatabasePhase.RUNNING: set(),
    }

    DORMANT_TRANSITIONS: Transitions = {
        None: {
            DatabasePhase.PAUSING,
        },
        DatabasePhase.PAUSING: {
            DatabasePhase.PAUSED,
            DatabasePhase.RESUMING,      # Workload may still be up; create re-ensures it
        },
        DatabasePhase.PAUSED: {
            DatabasePhase.RESUMING,
            DatabasePhase.WIPING_OUT,
        },
        DatabasePhase.RESUMING: set(),
        DatabasePhase.WIPING_OUT: {
            DatabasePhase.WIPED_OUT,
        },
        DatabasePhase.WIPED_OUT: set(),  # Terminal state, data is gone
    }

    @classmethod
    def _transitions_for(cls, kind: str) -> Transitions:
        if kind == DATABASE_KIND:
            return cls.DATABASE_TRANSITIONS
        if kind == DORMANT_KIND:
            return cls.DORMANT_TRANSITIONS
        raise ValueError(f"Unknown resource kind {kind!r}")

    @classmethod
    def can_transition(
        cls,
        kind: str,
        from_phase: Optional[DatabasePhase],
        to_phase: DatabasePhase,
    ) -> bool:
        """
        Check if a phase change is valid for the given resource kind.

        Example:
            >>> PhaseStateMachine.can_transition(
            ...     "ManagedDatabase", DatabasePhase.RUNNING, DatabasePhase.CREATING
            ... )
            False
        """
        if from_phase == to_phase:
            return True
        return to_phase in cls._transitions_for(kind).get(from_phase, set())

    @classmethod
    def validate_transition(
        cls,
        kind: str,
        from_phase: Optional[DatabasePhase],
        to_phase: DatabasePhase,
        resource_key: Optional[str] = None,
    ) -> None:
        """
        Validate a phase change and raise if it is not allowed.

        Args:
            kind: ManagedDatabase or DormantDatabase
            from_phase: Phase currently stored (None if never set)
            to_phase: Phase about to be written
            resource_key: Optional namespace/name for logging

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if cls.can_transition(kind, from_phase, to_phase):
            return

        from_label = from_phase.value if from_phase else "<none>"
        error_msg = f"Invalid {kind} phase transition from {from_label} to {to_phase.value}"
        if resource_key:
            error_msg += f" for {resource_key}"

        logger.error(
            "invalid_phase_transition",
            kind=kind,
            resource=resource_key,
            from_phase=from_label,
            to_phase=to_phase.value,
            allowed_phases=sorted(p.value for p in cls._transitions_for(kind).get(from_phase, set())),
        )
        raise InvalidTransitionError(
            error_msg,
            details={"kind": kind, "from_phase": from_label, "to_phase": to_phase.value},
        )
