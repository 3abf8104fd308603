"""CLI entrypoint for agent-pipeline."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_pipeline import __version__
from agent_pipeline.config import LOG_LEVELS, Settings
from agent_pipeline.pipeline.controllers import (
    CheckpointDecisionCommand,
    CheckpointListCommand,
    JobListCommand,
    JobMutateCommand,
    JobSubmitCommand,
    PipelineCliController,
    WorkerReconcileCommand,
    WorkerRunCommand,
    WorkerStatsCommand,
)
from agent_pipeline.pipeline.errors import PipelineError
from agent_pipeline.pipeline.models import JobStatus

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()
CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="agent-pipeline")
def agent_pipeline() -> None:
    """Agent job pipeline CLI."""

    try:
        level = Settings.from_env().log_level
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=level if level in LOG_LEVELS else "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_pipeline.group()
def jobs() -> None:
    """Submit and manage agent jobs."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--instruction", required=True, help="Natural-language task instruction.")
@click.option("--user-id", required=True, help="Submitting user id.")
@click.option("--context-json", default=None, help="Optional JSON object passed to the job.")
@click.option(
    "--priority",
    type=int,
    default=None,
    help="Priority 1..10 (10 = most urgent); out-of-range values are clamped.",
)
@click.option("--job-type", default=None, help="Explicit job type, skips keyword routing.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts before the job fails terminally.",
)
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    instruction: str,
    user_id: str,
    context_json: str | None,
    priority: int | None,
    job_type: str | None,
    max_attempts: int | None,
) -> None:
    """Submit a task and print its orchestrator id."""

    _run(
        PIPELINE_CONTROLLER.submit,
        JobSubmitCommand(
            db_path=db_path,
            instruction=instruction,
            user_id=user_id,
            context_json=context_json,
            priority=priority,
            job_type=job_type,
            max_attempts=max_attempts,
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", required=True, help="Calling user id.")
@click.option("--admin", is_flag=True, default=False, help="List jobs of all users.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max jobs to show.",
)
def jobs_list(
    db_path: Path | None,
    user_id: str,
    admin: bool,
    status: str | None,
    limit: int,
) -> None:
    """List recent jobs, newest first."""

    _run(
        PIPELINE_CONTROLLER.list_jobs,
        JobListCommand(
            db_path=db_path,
            user_id=user_id,
            admin=admin,
            status=status,
            limit=limit,
        ),
    )


def _job_options(func: Callable[..., None]) -> Callable[..., None]:
    func = click.option("--admin", is_flag=True, default=False, help="Act as admin.")(func)
    func = click.option("--user-id", required=True, help="Calling user id.")(func)
    func = click.option("--job-id", required=True, help="Job id.")(func)
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help="SQLite DB path.",
    )(func)


@jobs.command("inspect")
@_job_options
def jobs_inspect(db_path: Path | None, job_id: str, user_id: str, admin: bool) -> None:
    """Show one job with its checkpoints and log."""

    _run(
        PIPELINE_CONTROLLER.inspect_job,
        JobMutateCommand(db_path=db_path, job_id=job_id, user_id=user_id, admin=admin),
    )


@jobs.command("cancel")
@_job_options
def jobs_cancel(db_path: Path | None, job_id: str, user_id: str, admin: bool) -> None:
    """Cancel a job (running jobs stop at their next safe point)."""

    _run(
        PIPELINE_CONTROLLER.cancel_job,
        JobMutateCommand(db_path=db_path, job_id=job_id, user_id=user_id, admin=admin),
    )


@jobs.command("retry")
@_job_options
def jobs_retry(db_path: Path | None, job_id: str, user_id: str, admin: bool) -> None:
    """Re-queue a failed job that still has attempts left."""

    _run(
        PIPELINE_CONTROLLER.retry_job,
        JobMutateCommand(db_path=db_path, job_id=job_id, user_id=user_id, admin=admin),
    )


@agent_pipeline.group()
def checkpoints() -> None:
    """Review checkpoints of paused jobs."""


@checkpoints.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", default=None, help="Show all checkpoints of one job.")
def checkpoints_list(db_path: Path | None, job_id: str | None) -> None:
    """List pending checkpoints, or every checkpoint of one job."""

    _run(
        PIPELINE_CONTROLLER.list_checkpoints,
        CheckpointListCommand(db_path=db_path, job_id=job_id),
    )


@checkpoints.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--checkpoint-id", required=True, help="Checkpoint id.")
@click.option("--reviewer-id", required=True, help="Reviewer user id.")
def checkpoints_approve(db_path: Path | None, checkpoint_id: str, reviewer_id: str) -> None:
    """Approve a checkpoint; the job resumes on the next worker poll."""

    _run(
        PIPELINE_CONTROLLER.approve_checkpoint,
        CheckpointDecisionCommand(
            db_path=db_path,
            checkpoint_id=checkpoint_id,
            reviewer_id=reviewer_id,
        ),
    )


@checkpoints.command("reject")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--checkpoint-id", required=True, help="Checkpoint id.")
@click.option("--reviewer-id", required=True, help="Reviewer user id.")
@click.option("--reason", required=True, help="Why the checkpoint is rejected.")
def checkpoints_reject(
    db_path: Path | None,
    checkpoint_id: str,
    reviewer_id: str,
    reason: str,
) -> None:
    """Reject a checkpoint; the job fails terminally."""

    _run(
        PIPELINE_CONTROLLER.reject_checkpoint,
        CheckpointDecisionCommand(
            db_path=db_path,
            checkpoint_id=checkpoint_id,
            reviewer_id=reviewer_id,
            reason=reason,
        ),
    )


@agent_pipeline.group()
def worker() -> None:
    """Worker loop commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Run one claim-execute cycle (default).")
@click.option("--loop", is_flag=True, default=False, help="Process jobs until the queue is idle.")
@click.option(
    "--serve",
    is_flag=True,
    default=False,
    help="Run in the background until SIGINT/SIGTERM.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    loop: bool,
    serve: bool,
    max_jobs: int | None,
) -> None:
    """Run the job worker."""

    modes = (("once", once), ("loop", loop), ("serve", serve))
    selected = [name for name, enabled in modes if enabled]
    if len(selected) > 1:
        raise click.UsageError("Use only one of --once, --loop, --serve.")
    mode = selected[0] if selected else "once"
    _run(
        PIPELINE_CONTROLLER.run_worker,
        WorkerRunCommand(db_path=db_path, mode=mode, max_jobs=max_jobs),
    )


@worker.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def worker_stats(db_path: Path | None) -> None:
    """Show worker state and job counts by status."""

    _run(PIPELINE_CONTROLLER.worker_stats, WorkerStatsCommand(db_path=db_path))


@worker.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stale-seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Return RUNNING jobs claimed longer ago than this to the queue.",
)
def worker_reconcile(db_path: Path | None, stale_seconds: int | None) -> None:
    """Recover jobs left RUNNING by a crashed or stopped worker."""

    _run(
        PIPELINE_CONTROLLER.reconcile,
        WorkerReconcileCommand(db_path=db_path, stale_seconds=stale_seconds),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (PipelineError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_pipeline()
