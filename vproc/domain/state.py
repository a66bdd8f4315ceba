"""
Job lifecycle: QUEUED -> PROCESSING -> COMPLETED | FAILED | CANCELLED

Terminal states are final. Once a job enters one, no further transition is
allowed and the state never regresses.
"""

from typing import FrozenSet, Set, Tuple
from vproc.domain.models import JobState
from vproc.domain.errors import InvalidStateTransitionError

TERMINAL_JOB_STATES: FrozenSet[JobState] = frozenset({
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.CANCELLED,
})

_JOB_TRANSITIONS: Set[Tuple[JobState, JobState]] = {
    (JobState.QUEUED, JobState.PROCESSING),
    (JobState.PROCESSING, JobState.COMPLETED),
    (JobState.PROCESSING, JobState.FAILED),
    (JobState.PROCESSING, JobState.CANCELLED),
    # Unexpected exception before the worker picked the job up
    (JobState.QUEUED, JobState.FAILED),
}


def is_job_terminal(state: JobState) -> bool:
    return state in TERMINAL_JOB_STATES


def can_transition_job(current: JobState, target: JobState) -> bool:
    return (current, target) in _JOB_TRANSITIONS


def validate_job_transition(current: JobState, target: JobState) -> None:
    """Raises InvalidStateTransitionError if current -> target is not allowed."""
    if not can_transition_job(current, target):
        raise InvalidStateTransitionError(current.value, target.value)
