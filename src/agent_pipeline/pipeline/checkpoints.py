"""Human approval gate for paused jobs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from agent_pipeline.pipeline.errors import CheckpointNotFound, ValidationError
from agent_pipeline.pipeline.models import CheckpointStatus, CheckpointView
from agent_pipeline.pipeline.repository import JobRepository

logger = logging.getLogger(__name__)


class CheckpointGate:
    """Reviewer-facing checkpoint decisions.

    Approval leaves the job in AWAITING_CHECKPOINT; the worker loop resumes it
    on its next claim. Rejection and expiry fail the job in the same
    transaction as the checkpoint decision.
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        on_resolved: Callable[[], None] | None = None,
    ) -> None:
        self.repository = repository
        self.on_resolved = on_resolved

    def get_checkpoint(self, checkpoint_id: str) -> CheckpointView:
        checkpoint = self.repository.get_checkpoint(checkpoint_id=checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFound(f"Checkpoint not found: {checkpoint_id}")
        return checkpoint

    def list_checkpoints(self, job_id: str) -> list[CheckpointView]:
        return self.repository.list_checkpoints(job_id=job_id)

    def list_pending(self, *, limit: int = 100) -> list[CheckpointView]:
        return self.repository.list_checkpoints_by_status(
            status=CheckpointStatus.PENDING,
            limit=limit,
        )

    def approve_checkpoint(self, checkpoint_id: str, reviewer_id: str) -> CheckpointView:
        reviewer = _require_reviewer(reviewer_id)
        checkpoint = self.repository.approve_checkpoint(
            checkpoint_id=checkpoint_id,
            reviewer_id=reviewer,
        )
        logger.info(
            "Checkpoint %s (%s) approved by %s; job %s may resume",
            checkpoint.checkpoint_id,
            checkpoint.stage,
            reviewer,
            checkpoint.job_id,
        )
        self._notify()
        return checkpoint

    def reject_checkpoint(
        self,
        checkpoint_id: str,
        reviewer_id: str,
        reason: str,
    ) -> CheckpointView:
        reviewer = _require_reviewer(reviewer_id)
        if not (reason or "").strip():
            raise ValidationError("Rejection reason must be non-empty.")
        checkpoint = self.repository.reject_checkpoint(
            checkpoint_id=checkpoint_id,
            reviewer_id=reviewer,
            reason=reason,
        )
        logger.info(
            "Checkpoint %s (%s) rejected by %s; job %s failed",
            checkpoint.checkpoint_id,
            checkpoint.stage,
            reviewer,
            checkpoint.job_id,
        )
        return checkpoint

    def expire_stale_checkpoints(self, now: datetime | None = None) -> list[CheckpointView]:
        expired = self.repository.expire_checkpoints(now=now)
        for checkpoint in expired:
            logger.warning(
                "Checkpoint %s (%s) expired; job %s failed",
                checkpoint.checkpoint_id,
                checkpoint.stage,
                checkpoint.job_id,
            )
        return expired

    def _notify(self) -> None:
        if self.on_resolved is not None:
            self.on_resolved()


def _require_reviewer(reviewer_id: str) -> str:
    normalized = (reviewer_id or "").strip()
    if not normalized:
        raise ValidationError("reviewer_id must be non-empty.")
    return normalized
