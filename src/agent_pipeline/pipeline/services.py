"""Use-case services for submitting and managing agent jobs."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from typing import Any
from uuid import uuid4

from agent_pipeline.pipeline.errors import JobNotFound, PermissionDenied, ValidationError
from agent_pipeline.pipeline.models import Actor, JobCreate, JobDetails, JobStatus, JobView
from agent_pipeline.pipeline.repository import JobRepository
from agent_pipeline.pipeline.routing import resolve_job_type
from agent_pipeline.pipeline.state_machine import clamp_priority

logger = logging.getLogger(__name__)

ORCHESTRATOR_ID_PREFIX = "orch_"


class OrchestratorFacade:
    """Accepts natural-language work and turns it into a queued job."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        job_types: Collection[str],
        default_job_type: str = "simple-task",
        default_priority: int = 5,
        default_max_attempts: int = 3,
        on_submitted: Callable[[], None] | None = None,
    ) -> None:
        self.repository = repository
        self.job_types = tuple(job_types)
        self.default_job_type = default_job_type
        self.default_priority = default_priority
        self.default_max_attempts = default_max_attempts
        self.on_submitted = on_submitted

    def submit_task(  # noqa: PLR0913
        self,
        instruction: str,
        context: dict[str, Any] | None = None,
        user_id: str = "",
        priority: object | None = None,
        *,
        job_type: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """Create a PENDING job and return its orchestrator id.

        Returns immediately; execution happens on the worker loop.
        """

        normalized_instruction = (instruction or "").strip()
        if not normalized_instruction:
            raise ValidationError("Instruction must be non-empty.")
        normalized_user = (user_id or "").strip()
        if not normalized_user:
            raise ValidationError("user_id must be non-empty.")
        if context is not None and not isinstance(context, dict):
            raise ValidationError("context must be a JSON object.")
        attempts_limit = self.default_max_attempts if max_attempts is None else max_attempts
        if isinstance(attempts_limit, bool) or not isinstance(attempts_limit, int):
            raise ValidationError(f"max_attempts must be an integer, got {attempts_limit!r}.")
        if attempts_limit < 1:
            raise ValidationError("max_attempts must be >= 1.")

        resolved_type = resolve_job_type(
            instruction=normalized_instruction,
            context=context,
            explicit=job_type,
            job_types=self.job_types,
            default_job_type=self.default_job_type,
        )
        orchestrator_id = f"{ORCHESTRATOR_ID_PREFIX}{uuid4().hex}"
        job = self.repository.create_job(
            JobCreate(
                user_id=normalized_user,
                job_type=resolved_type,
                task_description=normalized_instruction,
                input_data={"instruction": normalized_instruction, "context": context or {}},
                priority=clamp_priority(self.default_priority if priority is None else priority),
                max_attempts=attempts_limit,
                orchestrator_id=orchestrator_id,
            ),
        )
        logger.info(
            "Submitted job %s (orchestrator_id=%s, type=%s, priority=%d)",
            job.job_id,
            orchestrator_id,
            job.job_type,
            job.priority,
        )
        if self.on_submitted is not None:
            self.on_submitted()
        return orchestrator_id

    def get_task_status(self, orchestrator_id: str) -> JobView:
        job = self.repository.get_job_by_orchestrator_id(orchestrator_id=orchestrator_id)
        if job is None:
            raise JobNotFound(f"No job for orchestrator id: {orchestrator_id}")
        return job


class JobService:
    """Caller-facing job queries and actions with owner-or-admin access."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        on_changed: Callable[[], None] | None = None,
    ) -> None:
        self.repository = repository
        self.on_changed = on_changed

    def list_jobs(
        self,
        actor: Actor,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        if limit < 1:
            raise ValidationError("limit must be >= 1.")
        return self.repository.list_jobs(
            user_id=None if actor.is_admin else actor.user_id,
            status=status,
            limit=limit,
        )

    def get_job(self, actor: Actor, job_id: str) -> JobDetails:
        details = self.repository.get_job_details(job_id=job_id)
        if details is None:
            raise JobNotFound(f"Job not found: {job_id}")
        _authorize(actor, details.job)
        return details

    def cancel_job(self, actor: Actor, job_id: str) -> JobView:
        self._owned_job(actor, job_id)
        job = self.repository.cancel_job(job_id=job_id)
        logger.info(
            "Cancel for job %s by %s: status=%s cancel_requested=%s",
            job_id,
            actor.user_id,
            job.status.value,
            job.cancel_requested,
        )
        return job

    def retry_job(self, actor: Actor, job_id: str) -> JobView:
        self._owned_job(actor, job_id)
        job = self.repository.retry_job(job_id=job_id)
        logger.info("Job %s re-queued by %s", job_id, actor.user_id)
        if self.on_changed is not None:
            self.on_changed()
        return job

    def _owned_job(self, actor: Actor, job_id: str) -> JobView:
        job = self.repository.get_job(job_id=job_id)
        if job is None:
            raise JobNotFound(f"Job not found: {job_id}")
        _authorize(actor, job)
        return job


def _authorize(actor: Actor, job: JobView) -> None:
    if actor.is_admin or job.user_id == actor.user_id:
        return
    raise PermissionDenied(f"User {actor.user_id} may not access job {job.job_id}.")
