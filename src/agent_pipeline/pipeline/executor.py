"""Task executor contract and the job-type handler registry."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_pipeline.pipeline.errors import JobCancelled
from agent_pipeline.pipeline.models import (
    CheckpointRequest,
    CheckpointStatus,
    CheckpointType,
    CheckpointView,
    FailureClass,
    JobView,
)
from agent_pipeline.pipeline.repository import JobRepository


@dataclass(slots=True, frozen=True)
class Completed:
    """Job finished; ``result`` becomes the job output."""

    result: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Failed:
    """Job attempt failed."""

    reason: str
    retryable: bool = True
    failure_class: FailureClass | None = None


@dataclass(slots=True, frozen=True)
class Paused:
    """Job needs human approval before continuing."""

    checkpoints: tuple[CheckpointRequest, ...]


ExecutionOutcome = Completed | Failed | Paused


class ExecutionContext:
    """Everything an executor may see or do while running one job."""

    def __init__(
        self,
        *,
        job: JobView,
        repository: JobRepository,
        checkpoints: list[CheckpointView] | None = None,
    ) -> None:
        self.job = job
        self.repository = repository
        self.checkpoints = checkpoints if checkpoints is not None else []

    @property
    def input_data(self) -> dict[str, Any]:
        return self.job.input_data

    def approved_stages(self) -> set[str]:
        return {
            item.stage for item in self.checkpoints if item.status == CheckpointStatus.APPROVED
        }

    def is_approved(self, stage: str) -> bool:
        return stage in self.approved_stages()

    def log(self, action: str, message: str, details: dict[str, object] | None = None) -> None:
        """Append an entry to the job's audit log."""

        self.repository.add_job_log(
            job_id=self.job.job_id,
            action=action,
            message=message,
            details=details,
        )

    def record_checkpoint(
        self,
        stage: str,
        message: str,
        data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CheckpointView:
        """Record an INFO checkpoint; the job keeps running."""

        checkpoint = self.repository.record_checkpoint(
            job_id=self.job.job_id,
            request=CheckpointRequest(
                stage=stage,
                message=message,
                data=data,
                checkpoint_type=CheckpointType.INFO,
                metadata=metadata,
            ),
        )
        self.checkpoints.append(checkpoint)
        return checkpoint

    def cancel_requested(self) -> bool:
        return self.repository.is_cancel_requested(job_id=self.job.job_id)

    def raise_if_cancelled(self) -> None:
        """Cooperative safe point for long-running executors."""

        if self.cancel_requested():
            raise JobCancelled(f"Job {self.job.job_id} was cancelled.")


class TaskExecutor(Protocol):
    """Protocol implemented by job executors."""

    def execute(self, context: ExecutionContext) -> ExecutionOutcome:
        """Run the job and report its outcome."""


JobHandler = Callable[[ExecutionContext], ExecutionOutcome]


class HandlerRegistryExecutor:
    """Dispatches to a handler registered for the job's ``job_type``."""

    def __init__(self, handlers: Mapping[str, JobHandler] | None = None) -> None:
        self._handlers: dict[str, JobHandler] = dict(handlers or {})

    @property
    def job_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))

    def execute(self, context: ExecutionContext) -> ExecutionOutcome:
        handler = self._handlers.get(context.job.job_type)
        if handler is None:
            return Failed(
                reason=f"No handler registered for job type {context.job.job_type!r}.",
                retryable=False,
                failure_class=FailureClass.UNKNOWN_JOB_TYPE,
            )
        return handler(context)
