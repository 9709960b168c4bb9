import pytest

from jobrouter.domain.jobs.state_machine import (
    ALLOWED_TRANSITIONS,
    EXECUTION_STATUSES,
    OPEN_STATUSES,
    JobStatus,
    TransitionError,
    allowed_next,
    assert_transition,
    can_transition,
    validate_transition_table,
)


def test_table_covers_every_status():
    assert set(ALLOWED_TRANSITIONS) == set(JobStatus)
    validate_transition_table(ALLOWED_TRANSITIONS)


@pytest.mark.parametrize(
    "current,desired",
    [
        ("DRAFT", "IN_REVIEW"),
        ("IN_REVIEW", "APPROVED"),
        ("APPROVED", "OPEN_FOR_ROUTING"),
        ("OPEN_FOR_ROUTING", "ASSIGNED"),
        ("ASSIGNED", "IN_PROGRESS"),
        ("IN_PROGRESS", "CONTRACTOR_COMPLETED"),
        ("CONTRACTOR_COMPLETED", "CUSTOMER_APPROVED"),
        ("CUSTOMER_APPROVED", "COMPLETED_APPROVED"),
        ("CUSTOMER_REJECTED", "IN_PROGRESS"),
        ("COMPLETION_FLAGGED", "CUSTOMER_APPROVED"),
    ],
)
def test_legal_moves(current, desired):
    assert_transition(current, desired)
    assert can_transition(JobStatus(current), JobStatus(desired))


@pytest.mark.parametrize(
    "current,desired",
    [
        ("CUSTOMER_REJECTED", "COMPLETED_APPROVED"),
        ("COMPLETION_FLAGGED", "COMPLETED_APPROVED"),
        ("DRAFT", "ASSIGNED"),
        ("ASSIGNED", "OPEN_FOR_ROUTING"),
        ("IN_PROGRESS", "COMPLETED_APPROVED"),
        ("COMPLETED_APPROVED", "IN_PROGRESS"),
    ],
)
def test_illegal_moves_raise(current, desired):
    with pytest.raises(TransitionError) as exc:
        assert_transition(current, desired)
    assert exc.value.current == current
    assert exc.value.desired == desired
    assert not can_transition(current, desired)


def test_unknown_status_is_rejected():
    with pytest.raises(TransitionError):
        assert_transition("PAUSED", "IN_PROGRESS")
    with pytest.raises(TransitionError):
        allowed_next("PAUSED")


def test_completed_approved_is_terminal():
    assert allowed_next(JobStatus.COMPLETED_APPROVED) == frozenset()


def test_open_and_execution_sets_do_not_overlap():
    assert not OPEN_STATUSES & EXECUTION_STATUSES


def test_validator_catches_dead_ends():
    broken = dict(ALLOWED_TRANSITIONS)
    broken[JobStatus.IN_PROGRESS] = frozenset()
    with pytest.raises(ValueError, match="dead end"):
        validate_transition_table(broken)


def test_validator_catches_unreachable_states():
    broken = dict(ALLOWED_TRANSITIONS)
    broken[JobStatus.CONTRACTOR_COMPLETED] = frozenset({JobStatus.CUSTOMER_APPROVED})
    broken[JobStatus.CUSTOMER_APPROVED] = frozenset({JobStatus.COMPLETED_APPROVED})
    with pytest.raises(ValueError, match="unreachable"):
        validate_transition_table(broken)


def test_validator_catches_missing_entries():
    broken = dict(ALLOWED_TRANSITIONS)
    del broken[JobStatus.PUBLISHED]
    with pytest.raises(ValueError, match="without a transition entry"):
        validate_transition_table(broken)
