"""
Result types for reconcile operations.

Auxiliary side effects (monitoring, backup schedules, snapshot restore) never
fail the operation that triggers them. ``best_effort`` runs such an action and
records what happened as a ``SideEffectOutcome`` instead of raising, so the
non-fatal paths stay visible to callers and tests.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, List, Optional

import structlog

from kubedb_operator.exceptions import OperationCancelledError

logger = structlog.get_logger(__name__)


class Severity(str, Enum):
    """Fatal steps raise instead of producing an outcome."""

    ADVISORY = "advisory"


@dataclass
class SideEffectOutcome:
    """What happened to one side effect of a reconcile operation."""

    action: str
    succeeded: bool
    severity: Severity = Severity.ADVISORY
    error: Optional[str] = None


@dataclass
class ReconcileResult:
    """Result from one reconcile operation (create, update, pause, ...)."""

    success: bool = True
    message: str = ""
    outcomes: List[SideEffectOutcome] = field(default_factory=list)

    def record(self, outcome: SideEffectOutcome) -> SideEffectOutcome:
        self.outcomes.append(outcome)
        return outcome

    @property
    def advisory_failures(self) -> List[SideEffectOutcome]:
        return [
            o for o in self.outcomes
            if not o.succeeded and o.severity == Severity.ADVISORY
        ]

    def outcome_for(self, action: str) -> Optional[SideEffectOutcome]:
        for outcome in self.outcomes:
            if outcome.action == action:
                return outcome
        return None


async def best_effort(action: str, operation: Awaitable, **log_context) -> SideEffectOutcome:
    """
    Await an auxiliary side effect, converting any failure into an outcome.

    Args:
        action: Short name of the side effect (e.g. "monitor_add")
        operation: Awaitable performing it
        **log_context: Extra key/value pairs for the warning log

    Returns:
        SideEffectOutcome with severity ADVISORY
    """
    try:
        await operation
    except OperationCancelledError:
        # Shutdown aborts the whole pass, not just this side effect.
        raise
    except Exception as e:
        logger.warning(
            "advisory_side_effect_failed",
            action=action,
            error_type=type(e).__name__,
            error=str(e),
            **log_context,
        )
        return SideEffectOutcome(action=action, succeeded=False, error=str(e))
    return SideEffectOutcome(action=action, succeeded=True)
