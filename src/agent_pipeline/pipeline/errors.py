"""Error taxonomy for the job pipeline.

Every error carries a human-readable message safe to show past the API
boundary. Only executor failures are retried automatically; everything else
needs an explicit caller or admin action.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for pipeline errors."""

    code = "pipeline_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(PipelineError):
    """Caller input is malformed (bad priority, missing fields)."""

    code = "validation_error"


class InvalidStateTransition(PipelineError):
    """Requested transition is not allowed from the current state."""

    code = "invalid_state_transition"

    def __init__(
        self,
        message: str,
        *,
        current: str | None = None,
        target: str | None = None,
    ) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class CheckpointAlreadyDecided(InvalidStateTransition):
    """Checkpoint was approved, rejected or closed before this decision."""

    code = "checkpoint_already_decided"


class ExecutorFailure(PipelineError):
    """Task-level failure raised by an executor or job handler."""

    code = "executor_failure"

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class JobCancelled(PipelineError):
    """Raised at a cooperative safe point when the job was cancelled."""

    code = "job_cancelled"


class StoreUnavailable(PipelineError):
    """Transient job store fault; the worker backs off instead of crashing."""

    code = "store_unavailable"


class JobNotFound(PipelineError):
    code = "job_not_found"


class CheckpointNotFound(PipelineError):
    code = "checkpoint_not_found"


class PermissionDenied(PipelineError):
    """Actor is neither the job owner nor an admin."""

    code = "permission_denied"
