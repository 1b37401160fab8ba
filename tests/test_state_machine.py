"""
Tests for the lifecycle phase graph.
"""
import pytest

from kubedb_operator.core.state_machine import PhaseStateMachine
from kubedb_operator.exceptions import InvalidTransitionError
from kubedb_operator.models.database import DATABASE_KIND, DORMANT_KIND, DatabasePhase


@pytest.mark.parametrize(
    "from_phase,to_phase",
    [
        (None, DatabasePhase.CREATING),
        (DatabasePhase.CREATING, DatabasePhase.INITIALIZING),
        (DatabasePhase.CREATING, DatabasePhase.RUNNING),
        (DatabasePhase.INITIALIZING, DatabasePhase.RUNNING),
        (DatabasePhase.INITIALIZING, DatabasePhase.CREATING),
    ],
)
def test_database_forward_transitions(from_phase, to_phase):
    assert PhaseStateMachine.can_transition(DATABASE_KIND, from_phase, to_phase)


@pytest.mark.parametrize(
    "from_phase,to_phase",
    [
        (DatabasePhase.RUNNING, DatabasePhase.CREATING),
        (DatabasePhase.RUNNING, DatabasePhase.INITIALIZING),
        (None, DatabasePhase.RUNNING),
        (DatabasePhase.CREATING, DatabasePhase.PAUSED),
    ],
)
def test_database_rejected_transitions(from_phase, to_phase):
    assert not PhaseStateMachine.can_transition(DATABASE_KIND, from_phase, to_phase)


def test_same_phase_is_always_allowed():
    assert PhaseStateMachine.can_transition(DATABASE_KIND, DatabasePhase.RUNNING, DatabasePhase.RUNNING)
    assert PhaseStateMachine.can_transition(DORMANT_KIND, DatabasePhase.WIPED_OUT, DatabasePhase.WIPED_OUT)


def test_wiped_out_is_terminal():
    for phase in DatabasePhase:
        if phase == DatabasePhase.WIPED_OUT:
            continue
        assert not PhaseStateMachine.can_transition(DORMANT_KIND, DatabasePhase.WIPED_OUT, phase)


def test_volumes_are_wiped_only_after_pause():
    assert not PhaseStateMachine.can_transition(DORMANT_KIND, DatabasePhase.PAUSING, DatabasePhase.WIPING_OUT)
    assert PhaseStateMachine.can_transition(DORMANT_KIND, DatabasePhase.PAUSED, DatabasePhase.WIPING_OUT)


def test_validate_transition_raises_with_details():
    with pytest.raises(InvalidTransitionError) as exc_info:
        PhaseStateMachine.validate_transition(
            DORMANT_KIND, DatabasePhase.RESUMING, DatabasePhase.PAUSED, "default/demo"
        )

    error = exc_info.value
    assert "default/demo" in error.message
    assert error.details == {"kind": DORMANT_KIND, "from_phase": "Resuming", "to_phase": "Paused"}
    assert error.retriable is False


def test_unknown_kind_is_rejected():
    with pytest.raises(ValueError):
        PhaseStateMachine.can_transition("Snapshot", None, DatabasePhase.CREATING)
