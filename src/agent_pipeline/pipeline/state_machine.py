"""Job lifecycle transition rules."""

from __future__ import annotations

from agent_pipeline.pipeline.errors import InvalidStateTransition, ValidationError
from agent_pipeline.pipeline.models import JobStatus

MIN_PRIORITY = 1
MAX_PRIORITY = 10

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
RUNNABLE_STATUSES = (JobStatus.PENDING, JobStatus.QUEUED)
DIRECT_CANCEL_STATUSES = frozenset(
    {JobStatus.PENDING, JobStatus.QUEUED, JobStatus.AWAITING_CHECKPOINT},
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.AWAITING_CHECKPOINT,
            JobStatus.CANCELLED,
            # automatic retry and stale-claim reconciliation
            JobStatus.PENDING,
        },
    ),
    JobStatus.AWAITING_CHECKPOINT: frozenset(
        {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    ),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise InvalidStateTransition unless current -> target is allowed."""

    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"Job cannot move from {current.value} to {target.value}.",
            current=current.value,
            target=target.value,
        )


def ensure_retry_allowed(*, status: JobStatus, attempts: int, max_attempts: int) -> None:
    """Manual retry is only valid for FAILED jobs with attempts left."""

    ensure_transition(status, JobStatus.PENDING)
    if status != JobStatus.FAILED:
        raise InvalidStateTransition(
            f"Only failed jobs can be retried, got {status.value}.",
            current=status.value,
            target=JobStatus.PENDING.value,
        )
    if attempts >= max_attempts:
        raise InvalidStateTransition(
            f"Retry limit reached ({attempts}/{max_attempts} attempts used).",
            current=status.value,
            target=JobStatus.PENDING.value,
        )


def clamp_priority(value: object) -> int:
    """Clamp a caller-supplied priority into [1, 10]."""

    if isinstance(value, bool):
        raise ValidationError(f"Priority must be an integer, got {value!r}.")
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str):
        try:
            number = int(value.strip())
        except ValueError as error:
            raise ValidationError(f"Priority must be an integer, got {value!r}.") from error
    else:
        raise ValidationError(f"Priority must be an integer, got {value!r}.")
    return max(MIN_PRIORITY, min(MAX_PRIORITY, number))
