"""
Job lifecycle state machine.

The allowed successor of every status lives in one table. Callers check a
move with ``assert_transition`` before writing it, and every write is a
conditional update on the expected current status (see JobRepository).
"""

from enum import Enum
from typing import Union


class JobStatus(str, Enum):
    DRAFT = "DRAFT"
    IN_REVIEW = "IN_REVIEW"
    NEEDS_CLARIFICATION = "NEEDS_CLARIFICATION"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    OPEN_FOR_ROUTING = "OPEN_FOR_ROUTING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    CONTRACTOR_COMPLETED = "CONTRACTOR_COMPLETED"
    CUSTOMER_APPROVED = "CUSTOMER_APPROVED"
    CUSTOMER_REJECTED = "CUSTOMER_REJECTED"
    COMPLETION_FLAGGED = "COMPLETION_FLAGGED"
    COMPLETED_APPROVED = "COMPLETED_APPROVED"


class TransitionError(Exception):
    """Raised when a job cannot move from one status to another"""

    def __init__(self, current, desired):
        self.current = current
        self.desired = desired
        super().__init__(f"Invalid job transition {current} -> {desired}")


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset] = {
    JobStatus.DRAFT: frozenset({JobStatus.IN_REVIEW, JobStatus.NEEDS_CLARIFICATION}),
    JobStatus.IN_REVIEW: frozenset({JobStatus.APPROVED, JobStatus.NEEDS_CLARIFICATION}),
    JobStatus.NEEDS_CLARIFICATION: frozenset({JobStatus.IN_REVIEW, JobStatus.APPROVED}),
    JobStatus.APPROVED: frozenset({JobStatus.PUBLISHED, JobStatus.OPEN_FOR_ROUTING}),
    JobStatus.PUBLISHED: frozenset({JobStatus.OPEN_FOR_ROUTING, JobStatus.ASSIGNED}),
    JobStatus.OPEN_FOR_ROUTING: frozenset({JobStatus.ASSIGNED}),
    JobStatus.ASSIGNED: frozenset({JobStatus.IN_PROGRESS}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.CONTRACTOR_COMPLETED}),
    JobStatus.CONTRACTOR_COMPLETED: frozenset(
        {JobStatus.CUSTOMER_APPROVED, JobStatus.CUSTOMER_REJECTED, JobStatus.COMPLETION_FLAGGED}
    ),
    JobStatus.CUSTOMER_APPROVED: frozenset({JobStatus.COMPLETED_APPROVED, JobStatus.COMPLETION_FLAGGED}),
    # Holding states: left only through an admin resolution
    JobStatus.CUSTOMER_REJECTED: frozenset({JobStatus.CUSTOMER_APPROVED, JobStatus.IN_PROGRESS}),
    JobStatus.COMPLETION_FLAGGED: frozenset({JobStatus.CUSTOMER_APPROVED, JobStatus.IN_PROGRESS}),
    JobStatus.COMPLETED_APPROVED: frozenset(),
}

# Statuses in which a job can still be offered to and accepted by a contractor
OPEN_STATUSES = frozenset({JobStatus.PUBLISHED, JobStatus.OPEN_FOR_ROUTING})
HOLDING_STATUSES = frozenset({JobStatus.CUSTOMER_REJECTED, JobStatus.COMPLETION_FLAGGED})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED_APPROVED})
# A contractor is executing the job; archiving is refused
EXECUTION_STATUSES = frozenset(
    {JobStatus.ASSIGNED, JobStatus.IN_PROGRESS, JobStatus.CONTRACTOR_COMPLETED}
    | HOLDING_STATUSES
    | {JobStatus.CUSTOMER_APPROVED}
)


def _coerce(status: Union[str, JobStatus]) -> JobStatus:
    if isinstance(status, JobStatus):
        return status
    try:
        return JobStatus(status)
    except ValueError:
        raise TransitionError(status, None) from None


def allowed_next(current: Union[str, JobStatus]) -> frozenset:
    return ALLOWED_TRANSITIONS[_coerce(current)]


def can_transition(current: Union[str, JobStatus], desired: Union[str, JobStatus]) -> bool:
    try:
        assert_transition(current, desired)
    except TransitionError:
        return False
    return True


def assert_transition(current: Union[str, JobStatus], desired: Union[str, JobStatus]) -> None:
    """Raise TransitionError unless ``desired`` is a legal successor of ``current``"""
    try:
        current_status = JobStatus(current)
        desired_status = JobStatus(desired)
    except ValueError:
        raise TransitionError(current, desired) from None

    if desired_status not in ALLOWED_TRANSITIONS[current_status]:
        raise TransitionError(current_status.value, desired_status.value)


def validate_transition_table(table: dict) -> None:
    """Check the table is total, closed and has no unreachable or stuck states"""
    missing = set(JobStatus) - set(table)
    if missing:
        raise ValueError(f"Statuses without a transition entry: {sorted(s.value for s in missing)}")

    for source, targets in table.items():
        unknown = [t for t in targets if not isinstance(t, JobStatus)]
        if unknown:
            raise ValueError(f"{source.value} lists unknown targets: {unknown}")
        if not targets and source not in TERMINAL_STATUSES:
            raise ValueError(f"{source.value} is a dead end but not terminal")

    reachable = {JobStatus.DRAFT}
    frontier = [JobStatus.DRAFT]
    while frontier:
        for target in table[frontier.pop()]:
            if target not in reachable:
                reachable.add(target)
                frontier.append(target)
    unreachable = set(JobStatus) - reachable
    if unreachable:
        raise ValueError(f"Statuses unreachable from DRAFT: {sorted(s.value for s in unreachable)}")


validate_transition_table(ALLOWED_TRANSITIONS)
