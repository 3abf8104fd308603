"""Controllers for worker administration and pipeline CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from agent_pipeline.config import Settings
from agent_pipeline.pipeline.checkpoints import CheckpointGate
from agent_pipeline.pipeline.errors import ValidationError
from agent_pipeline.pipeline.executor import HandlerRegistryExecutor
from agent_pipeline.pipeline.handlers import default_executor
from agent_pipeline.pipeline.models import (
    Actor,
    CheckpointView,
    JobStatus,
    JobView,
    WorkerStats,
)
from agent_pipeline.pipeline.repository import JobRepository
from agent_pipeline.pipeline.services import JobService, OrchestratorFacade
from agent_pipeline.pipeline.worker import WorkerLoop, WorkerRunSummary


@dataclass(slots=True)
class WorkerControllerStats:
    """Worker lifecycle snapshot plus queue depth per status."""

    worker: WorkerStats
    job_counts: dict[JobStatus, int]


class WorkerController:
    """Admin surface over one worker loop."""

    def __init__(self, *, worker: WorkerLoop, repository: JobRepository) -> None:
        self.worker = worker
        self.repository = repository

    def start(self) -> bool:
        return self.worker.start()

    def stop(self, timeout: float | None = None) -> bool:
        return self.worker.stop(timeout=timeout)

    def get_stats(self) -> WorkerControllerStats:
        return WorkerControllerStats(
            worker=self.worker.stats(),
            job_counts=self.repository.count_jobs_by_status(),
        )


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    instruction: str
    user_id: str
    context_json: str | None
    priority: int | None
    job_type: str | None
    max_attempts: int | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    user_id: str
    admin: bool
    status: str | None
    limit: int


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for inspect/cancel/retry operations."""

    db_path: Path | None
    job_id: str
    user_id: str
    admin: bool


@dataclass(slots=True)
class CheckpointListCommand:
    db_path: Path | None
    job_id: str | None
    limit: int = 100


@dataclass(slots=True)
class CheckpointDecisionCommand:
    """CLI input for approve/reject."""

    db_path: Path | None
    checkpoint_id: str
    reviewer_id: str
    reason: str | None = None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    mode: str
    max_jobs: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class WorkerStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkerReconcileCommand:
    db_path: Path | None
    stale_seconds: int | None


class PipelineCliController:
    """Coordinates job, checkpoint and worker CLI operations."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        context = _parse_context(command.context_json)
        with _runtime(command.db_path) as runtime:
            orchestrator_id = runtime.facade.submit_task(
                command.instruction,
                context,
                command.user_id,
                command.priority,
                job_type=command.job_type,
                max_attempts=command.max_attempts,
            )
            job = runtime.facade.get_task_status(orchestrator_id)
        return [
            f"Job submitted: orchestrator_id={orchestrator_id}",
            f"  job_id={job.job_id} type={job.job_type} status={job.status.value} "
            f"priority={job.priority}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        status_filter = _parse_status(command.status)
        with _runtime(command.db_path) as runtime:
            jobs = runtime.jobs.list_jobs(
                Actor(user_id=command.user_id, is_admin=command.admin),
                status=status_filter,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(_job_line(job) for job in jobs)
        return lines

    def inspect_job(self, command: JobMutateCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            details = runtime.jobs.get_job(_actor(command), command.job_id)

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Owner: {job.user_id}",
            f"Type: {job.job_type}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Orchestrator id: {job.orchestrator_id or '-'}",
            f"Cancel requested: {'yes' if job.cancel_requested else 'no'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Failure reason: {job.failure_reason or '-'}",
            f"Task: {job.task_description}",
            f"Output: {json.dumps(job.output_data, ensure_ascii=False, sort_keys=True)}"
            if job.output_data is not None
            else "Output: -",
            f"Checkpoints: {len(details.checkpoints)}",
        ]
        lines.extend(f"  {_checkpoint_line(checkpoint)}" for checkpoint in details.checkpoints)
        lines.append(f"Logs: {len(details.logs)}")
        for entry in details.logs:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.action} "
                f"{entry.status_from.value if entry.status_from else '-'} -> "
                f"{entry.status_to.value if entry.status_to else '-'} {entry.message}",
            )
        return lines

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.jobs.cancel_job(_actor(command), command.job_id)
        if job.status == JobStatus.CANCELLED:
            return [f"Job cancelled: {job.job_id}"]
        return [f"Cancel requested for running job: {job.job_id}"]

    def retry_job(self, command: JobMutateCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.jobs.retry_job(_actor(command), command.job_id)
        return [f"Job re-queued: {job.job_id} attempts={job.attempts}/{job.max_attempts}"]

    def list_checkpoints(self, command: CheckpointListCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            if command.job_id is not None:
                checkpoints = runtime.gate.list_checkpoints(command.job_id)
            else:
                checkpoints = runtime.gate.list_pending(limit=command.limit)
        title = "Checkpoints" if command.job_id is not None else "Pending checkpoints"
        lines = [f"{title}: {len(checkpoints)}"]
        for checkpoint in checkpoints:
            lines.append(f"  {_checkpoint_line(checkpoint)}")
            lines.append(f"    {checkpoint.message}")
        return lines

    def approve_checkpoint(self, command: CheckpointDecisionCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            checkpoint = runtime.gate.approve_checkpoint(
                command.checkpoint_id,
                command.reviewer_id,
            )
        return [
            f"Checkpoint approved: {checkpoint.checkpoint_id} "
            f"(job {checkpoint.job_id} will resume on next worker poll)",
        ]

    def reject_checkpoint(self, command: CheckpointDecisionCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            checkpoint = runtime.gate.reject_checkpoint(
                command.checkpoint_id,
                command.reviewer_id,
                command.reason or "",
            )
        return [f"Checkpoint rejected: {checkpoint.checkpoint_id} (job {checkpoint.job_id} failed)"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            if command.mode == "serve":
                runtime.worker.serve()
                stats = runtime.controller.get_stats()
                return [
                    f"Worker stopped: worker_id={stats.worker.worker_id} "
                    f"jobs_claimed={stats.worker.jobs_claimed}",
                ]
            if command.mode == "once":
                summary = runtime.worker.run_once()
            else:
                summary = runtime.worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
        return [_summary_line(summary)]

    def worker_stats(self, command: WorkerStatsCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            stats = runtime.controller.get_stats()
        last_poll = stats.worker.last_poll_at.isoformat() if stats.worker.last_poll_at else "-"
        lines = [
            f"Worker: {stats.worker.worker_id} running={'yes' if stats.worker.running else 'no'} "
            f"jobs_claimed={stats.worker.jobs_claimed} last_poll_at={last_poll}",
            "Jobs by status:",
        ]
        lines.extend(f"  {status.value}: {count}" for status, count in stats.job_counts.items())
        return lines

    def reconcile(self, command: WorkerReconcileCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            stale_seconds = (
                command.stale_seconds
                if command.stale_seconds is not None
                else runtime.settings.worker.stale_running_seconds
            )
            if stale_seconds < 0:
                raise ValidationError("--stale-seconds must be >= 0.")
            job_ids = runtime.repository.reconcile_running_jobs(
                stale_after=timedelta(seconds=stale_seconds),
            )
        lines = [f"Reconciled jobs: {len(job_ids)}"]
        lines.extend(f"  {job_id}" for job_id in job_ids)
        return lines


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    repository: JobRepository
    executor: HandlerRegistryExecutor
    worker: WorkerLoop
    gate: CheckpointGate
    facade: OrchestratorFacade
    jobs: JobService
    controller: WorkerController


@contextmanager
def _runtime(db_path: Path | None) -> Iterator[_Runtime]:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        executor = default_executor()
        gate = CheckpointGate(repository)
        worker = WorkerLoop(
            repository=repository,
            executor=executor,
            worker_id=settings.worker.worker_id,
            gate=gate,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            max_concurrent_jobs=settings.worker.max_concurrent_jobs,
            retry_base_seconds=settings.worker.retry_base_seconds,
            retry_max_seconds=settings.worker.retry_max_seconds,
            store_backoff_seconds=settings.worker.store_backoff_seconds,
            store_backoff_max_seconds=settings.worker.store_backoff_max_seconds,
            drain_timeout_seconds=settings.worker.drain_timeout_seconds,
            checkpoint_ttl_seconds=settings.jobs.checkpoint_ttl_seconds,
        )
        gate.on_resolved = worker.wake
        yield _Runtime(
            settings=settings,
            repository=repository,
            executor=executor,
            worker=worker,
            gate=gate,
            facade=OrchestratorFacade(
                repository=repository,
                job_types=executor.job_types,
                default_job_type=settings.jobs.default_job_type,
                default_priority=settings.jobs.default_priority,
                default_max_attempts=settings.jobs.default_max_attempts,
                on_submitted=worker.wake,
            ),
            jobs=JobService(repository=repository, on_changed=worker.wake),
            controller=WorkerController(worker=worker, repository=repository),
        )
    finally:
        repository.close()


def _actor(command: JobMutateCommand) -> Actor:
    return Actor(user_id=command.user_id, is_admin=command.admin)


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.strip().lower())
    except ValueError as error:
        raise ValidationError(
            f"Unsupported job status: {value!r}. "
            f"Expected one of: {', '.join(status.value for status in JobStatus)}.",
        ) from error


def _parse_context(value: str | None) -> dict[str, Any] | None:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as error:
        raise ValidationError(f"--context-json is not valid JSON: {error.msg}") from error
    if not isinstance(parsed, dict):
        raise ValidationError("--context-json must be a JSON object.")
    return parsed


def _job_line(job: JobView) -> str:
    return (
        f"  {job.job_id} type={job.job_type} status={job.status.value} "
        f"priority={job.priority} attempts={job.attempts}/{job.max_attempts} "
        f"owner={job.user_id} created_at={job.created_at.isoformat()}"
    )


def _checkpoint_line(checkpoint: CheckpointView) -> str:
    reviewer = checkpoint.reviewer_id or "-"
    return (
        f"{checkpoint.checkpoint_id} job={checkpoint.job_id} stage={checkpoint.stage} "
        f"type={checkpoint.checkpoint_type.value} status={checkpoint.status.value} "
        f"reviewer={reviewer}"
    )


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} paused={summary.paused} "
        f"cancelled={summary.cancelled} idle_polls={summary.idle_polls} "
        f"store_errors={summary.store_errors}"
    )
