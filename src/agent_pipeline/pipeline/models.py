"""Domain models for the agent job queue and checkpoint gate."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_CHECKPOINT = "awaiting_checkpoint"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CheckpointType(str, Enum):
    """Whether a checkpoint blocks the job or is only recorded."""

    APPROVAL_REQUIRED = "approval_required"
    INFO = "info"


class CheckpointStatus(str, Enum):
    """Human approval gate states. Everything except PENDING is terminal.

    INFO checkpoints are stored as RECORDED and never block their job.
    """

    PENDING = "pending"
    RECORDED = "recorded"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class FailureClass(str, Enum):
    """Why a job failed; only EXECUTOR_FAILURE is retried automatically."""

    EXECUTOR_FAILURE = "executor_failure"
    EXECUTOR_NON_RETRYABLE = "executor_non_retryable"
    UNKNOWN_JOB_TYPE = "unknown_job_type"
    CHECKPOINT_REJECTED = "checkpoint_rejected"
    CHECKPOINT_EXPIRED = "checkpoint_expired"


@dataclass(slots=True)
class JobCreate:
    """Input payload for inserting a job."""

    user_id: str
    job_type: str
    task_description: str
    input_data: dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    max_attempts: int = 3
    orchestrator_id: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for services and worker logic."""

    job_id: str
    user_id: str
    job_type: str
    status: JobStatus
    priority: int
    task_description: str
    input_data: dict[str, Any]
    output_data: dict[str, Any] | None
    orchestrator_id: str | None
    attempts: int
    max_attempts: int
    failure_class: FailureClass | None
    failure_reason: str | None
    failed_at: datetime | None
    cancel_requested: bool
    run_after: datetime
    started_at: datetime | None
    completed_at: datetime | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class CheckpointRequest:
    """Checkpoint raised by an executor.

    APPROVAL_REQUIRED requests are returned in ``Paused`` and block the job;
    INFO requests are recorded through the execution context.
    """

    stage: str
    message: str
    data: dict[str, Any] | None = None
    checkpoint_type: CheckpointType = CheckpointType.APPROVAL_REQUIRED
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class CheckpointView:
    """Stored checkpoint row."""

    checkpoint_id: str
    job_id: str
    stage: str
    message: str
    data: dict[str, Any] | None
    status: CheckpointStatus
    checkpoint_type: CheckpointType
    metadata: dict[str, Any] | None
    reviewer_id: str | None
    reviewed_at: datetime | None
    rejection_reason: str | None
    expires_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobLogView:
    """Audit log entry."""

    log_id: int
    job_id: str
    action: str
    message: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its checkpoints and logs, both in insertion order."""

    job: JobView
    checkpoints: list[CheckpointView]
    logs: list[JobLogView]


@dataclass(slots=True)
class Actor:
    """Principal calling the job service."""

    user_id: str
    is_admin: bool = False


@dataclass(slots=True)
class WorkerStats:
    """Snapshot of the worker loop lifecycle."""

    running: bool
    worker_id: str
    jobs_claimed: int
    last_poll_at: datetime | None
    in_flight_job_ids: tuple[str, ...] = ()

    @property
    def current_job_id(self) -> str | None:
        return self.in_flight_job_ids[0] if self.in_flight_job_ids else None
