"""Persistent job store backed by SQLModel + SQLite.

Every state change is a single conditional ``UPDATE ... WHERE status = ?``
committed together with its audit log entry. A conditional update that
matches no row means another actor won the race; callers get ``False``/``None``
or an ``InvalidStateTransition`` instead of a silently overwritten row.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, exists, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from agent_pipeline.pipeline.errors import (
    CheckpointAlreadyDecided,
    CheckpointNotFound,
    InvalidStateTransition,
    JobNotFound,
    StoreUnavailable,
    ValidationError,
)
from agent_pipeline.pipeline.models import (
    CheckpointRequest,
    CheckpointStatus,
    CheckpointType,
    CheckpointView,
    FailureClass,
    JobCreate,
    JobDetails,
    JobLogView,
    JobStatus,
    JobView,
)
from agent_pipeline.pipeline.state_machine import (
    DIRECT_CANCEL_STATUSES,
    RUNNABLE_STATUSES,
    ensure_retry_allowed,
    ensure_transition,
)
from agent_pipeline.storage.alembic_runner import upgrade_head
from agent_pipeline.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_pipeline.storage.sqlmodel_models import AgentCheckpoint, AgentJob, AgentJobLog


class JobRepository:
    """Job, checkpoint and log persistence facade."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise StoreUnavailable(f"Job store unavailable: {error.orig}") from error

    # -- jobs -----------------------------------------------------------------

    def create_job(self, payload: JobCreate) -> JobView:
        """Insert a PENDING job."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with self._session() as session:
            row = AgentJob(
                job_id=job_id,
                user_id=payload.user_id,
                job_type=payload.job_type,
                status=JobStatus.PENDING.value,
                priority=payload.priority,
                task_description=payload.task_description,
                input_json=dump_json(payload.input_data),
                orchestrator_id=payload.orchestrator_id,
                attempts=0,
                max_attempts=payload.max_attempts,
                cancel_requested=False,
                run_after=to_db_datetime(now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_log(
                session=session,
                job_id=job_id,
                action="created",
                message=f"Job created with priority {payload.priority}.",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "job_type": payload.job_type,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                    "orchestrator_id": payload.orchestrator_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, *, job_id: str) -> JobView | None:
        with self._session() as session:
            row = session.get(AgentJob, job_id)
            return _to_job_view(row) if row is not None else None

    def get_job_by_orchestrator_id(self, *, orchestrator_id: str) -> JobView | None:
        with self._session() as session:
            row = session.exec(
                select(AgentJob).where(AgentJob.orchestrator_id == orchestrator_id),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally scoped to an owner and a status."""

        with self._session() as session:
            statement = select(AgentJob)
            if user_id is not None:
                statement = statement.where(AgentJob.user_id == user_id)
            if status is not None:
                statement = statement.where(AgentJob.status == status.value)
            statement = statement.order_by(col(AgentJob.created_at).desc()).limit(limit)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def count_jobs_by_status(self) -> dict[JobStatus, int]:
        """Aggregate job counts for every status, zero-filled."""

        counts = {status: 0 for status in JobStatus}
        with self._session() as session:
            rows = session.exec(
                select(AgentJob.status, func.count()).group_by(AgentJob.status),
            ).all()
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return counts

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job with its checkpoints and log stream."""

        with self._session() as session:
            row = session.get(AgentJob, job_id)
            if row is None:
                return None
            checkpoint_rows = session.exec(
                select(AgentCheckpoint)
                .where(AgentCheckpoint.job_id == job_id)
                .order_by(col(AgentCheckpoint.created_at).asc()),
            ).all()
            log_rows = session.exec(
                select(AgentJobLog)
                .where(AgentJobLog.job_id == job_id)
                .order_by(col(AgentJobLog.id).asc()),
            ).all()
            return JobDetails(
                job=_to_job_view(row),
                checkpoints=[_to_checkpoint_view(item) for item in checkpoint_rows],
                logs=[_to_log_view(item) for item in log_rows],
            )

    def is_cancel_requested(self, *, job_id: str) -> bool:
        with self._session() as session:
            flag = session.exec(
                select(AgentJob.cancel_requested).where(AgentJob.job_id == job_id),
            ).one_or_none()
        return bool(flag)

    # -- claiming -------------------------------------------------------------

    def claim_next_job(self, *, worker_id: str, now: datetime | None = None) -> JobView | None:
        """Atomically claim the most urgent runnable job.

        Runnable means PENDING/QUEUED with ``run_after`` reached, or
        AWAITING_CHECKPOINT with no checkpoint left pending. Ordering is
        ``priority DESC, created_at ASC``.
        """

        while True:
            current = now or utc_now()
            with self._session() as session:
                pending_checkpoint = exists().where(
                    col(AgentCheckpoint.job_id) == col(AgentJob.job_id),
                    col(AgentCheckpoint.status) == CheckpointStatus.PENDING.value,
                )
                candidate = session.exec(
                    select(AgentJob)
                    .where(
                        or_(
                            and_(
                                col(AgentJob.status).in_(
                                    [status.value for status in RUNNABLE_STATUSES],
                                ),
                                col(AgentJob.run_after) <= to_db_datetime(current),
                            ),
                            and_(
                                col(AgentJob.status) == JobStatus.AWAITING_CHECKPOINT.value,
                                ~pending_checkpoint,
                            ),
                        ),
                    )
                    .order_by(col(AgentJob.priority).desc(), col(AgentJob.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                claimed = self._claim_row(
                    session=session,
                    row=candidate,
                    worker_id=worker_id,
                    now=current,
                )
                if claimed is None:
                    continue
                return claimed

    def claim_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        now: datetime | None = None,
    ) -> JobView | None:
        """Claim one specific job; returns None when it is not claimable."""

        current = now or utc_now()
        with self._session() as session:
            row = session.get(AgentJob, job_id)
            if row is None:
                raise JobNotFound(f"Job not found: {job_id}")
            status = JobStatus(row.status)
            if status in RUNNABLE_STATUSES:
                if to_utc_aware_datetime(row.run_after) > current:
                    return None
            elif status != JobStatus.AWAITING_CHECKPOINT:
                return None
            return self._claim_row(session=session, row=row, worker_id=worker_id, now=current)

    def _claim_row(
        self,
        *,
        session: Session,
        row: AgentJob,
        worker_id: str,
        now: datetime,
    ) -> JobView | None:
        job_id = row.job_id
        previous = JobStatus(row.status)
        if previous == JobStatus.PENDING:
            ensure_transition(JobStatus.PENDING, JobStatus.QUEUED)
            ensure_transition(JobStatus.QUEUED, JobStatus.RUNNING)
        else:
            ensure_transition(previous, JobStatus.RUNNING)

        conditions = [
            col(AgentJob.job_id) == job_id,
            col(AgentJob.status) == previous.value,
        ]
        if previous == JobStatus.AWAITING_CHECKPOINT:
            conditions.append(
                ~exists().where(
                    col(AgentCheckpoint.job_id) == job_id,
                    col(AgentCheckpoint.status) == CheckpointStatus.PENDING.value,
                ),
            )
        result = session.exec(
            sa_update(AgentJob)
            .where(*conditions)
            .values(
                status=JobStatus.RUNNING.value,
                started_at=to_db_datetime(now),
                worker_id=worker_id,
                updated_at=to_db_datetime(now),
            )
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            session.rollback()
            return None

        if previous == JobStatus.PENDING:
            self._add_log(
                session=session,
                job_id=job_id,
                action="queued",
                message="Job selected by worker poll.",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.QUEUED,
                details={"worker_id": worker_id},
            )
            previous = JobStatus.QUEUED
        self._add_log(
            session=session,
            job_id=job_id,
            action="resumed" if previous == JobStatus.AWAITING_CHECKPOINT else "claimed",
            message=(
                "Checkpoint resolved, job resumed."
                if previous == JobStatus.AWAITING_CHECKPOINT
                else "Job claimed for execution."
            ),
            status_from=previous,
            status_to=JobStatus.RUNNING,
            details={"worker_id": worker_id},
        )
        session.commit()
        claimed = session.get(AgentJob, job_id, populate_existing=True)
        if claimed is None:  # pragma: no cover - row cannot vanish inside claim
            return None
        return _to_job_view(claimed)

    # -- executor outcomes ----------------------------------------------------

    def complete_job(self, *, job_id: str, result: dict[str, Any]) -> bool:
        """Mark a running job as completed unless a cancel was requested."""

        now = utc_now()
        with self._session() as session:
            update_result = session.exec(
                sa_update(AgentJob)
                .where(
                    col(AgentJob.job_id) == job_id,
                    col(AgentJob.status) == JobStatus.RUNNING.value,
                    col(AgentJob.cancel_requested).is_(False),
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    output_json=dump_json(result),
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                job_id=job_id,
                action="completed",
                message="Job completed.",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.COMPLETED,
                details={"result": result},
            )
            session.commit()
            return True

    def schedule_retry(
        self,
        *,
        job_id: str,
        run_after: datetime,
        reason: str,
    ) -> bool:
        """Count a failed attempt and requeue the job after a backoff delay."""

        now = utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(AgentJob)
                .where(
                    col(AgentJob.job_id) == job_id,
                    col(AgentJob.status) == JobStatus.RUNNING.value,
                    col(AgentJob.cancel_requested).is_(False),
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=col(AgentJob.attempts) + 1,
                    run_after=to_db_datetime(run_after),
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                job_id=job_id,
                action="retry_scheduled",
                message=f"Attempt failed, retry scheduled: {reason}",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.PENDING,
                details={
                    "reason": reason,
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                },
            )
            session.commit()
            return True

    def fail_job(
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        reason: str,
    ) -> bool:
        """Move a running job to terminal FAILED; the failed run counts as an attempt."""

        now = utc_now()
        values: dict[str, Any] = {
            "status": JobStatus.FAILED.value,
            "failure_class": failure_class.value,
            "failure_reason": reason,
            "failed_at": to_db_datetime(now),
            "updated_at": to_db_datetime(now),
            "attempts": col(AgentJob.attempts) + 1,
        }
        with self._session() as session:
            result = session.exec(
                sa_update(AgentJob)
                .where(
                    col(AgentJob.job_id) == job_id,
                    col(AgentJob.status) == JobStatus.RUNNING.value,
                    col(AgentJob.cancel_requested).is_(False),
                )
                .values(**values)
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                job_id=job_id,
                action="failed",
                message=reason,
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.FAILED,
                details={"failure_class": failure_class.value},
            )
            session.commit()
            return True

    def pause_job(
        self,
        *,
        job_id: str,
        request: CheckpointRequest,
        expires_at: datetime | None = None,
    ) -> CheckpointView | None:
        """Open a PENDING checkpoint and park the job until it is decided."""

        if request.checkpoint_type != CheckpointType.APPROVAL_REQUIRED:
            raise ValidationError(
                f"Checkpoint '{request.stage}' is {request.checkpoint_type.value} "
                "and cannot block the job.",
            )
        now = utc_now()
        checkpoint_id = str(uuid4())
        with self._session() as session:
            result = session.exec(
                sa_update(AgentJob)
                .where(
                    col(AgentJob.job_id) == job_id,
                    col(AgentJob.status) == JobStatus.RUNNING.value,
                    col(AgentJob.cancel_requested).is_(False),
                )
                .values(
                    status=JobStatus.AWAITING_CHECKPOINT.value,
                    updated_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            checkpoint = AgentCheckpoint(
                checkpoint_id=checkpoint_id,
                job_id=job_id,
                stage=request.stage,
                message=request.message,
                data_json=dump_json(request.data),
                status=CheckpointStatus.PENDING.value,
                checkpoint_type=request.checkpoint_type.value,
                metadata_json=dump_json(request.metadata),
                expires_at=to_db_datetime(expires_at) if expires_at is not None else None,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(checkpoint)
            self._add_log(
                session=session,
                job_id=job_id,
                action="checkpoint_opened",
                message=request.message,
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.AWAITING_CHECKPOINT,
                details={"checkpoint_id": checkpoint_id, "stage": request.stage},
            )
            session.commit()
            session.refresh(checkpoint)
            return _to_checkpoint_view(checkpoint)

    def record_checkpoint(self, *, job_id: str, request: CheckpointRequest) -> CheckpointView:
        """Store an INFO checkpoint for a running job without pausing it."""

        if request.checkpoint_type != CheckpointType.INFO:
            raise ValidationError(
                f"Checkpoint '{request.stage}' requires approval; return it in Paused.",
            )
        now = utc_now()
        with self._session() as session:
            row = self._job_row(session=session, job_id=job_id)
            if row.status != JobStatus.RUNNING.value:
                raise InvalidStateTransition(
                    f"Cannot record checkpoint for job in status={row.status}.",
                    current=row.status,
                )
            checkpoint = AgentCheckpoint(
                checkpoint_id=str(uuid4()),
                job_id=job_id,
                stage=request.stage,
                message=request.message,
                data_json=dump_json(request.data),
                status=CheckpointStatus.RECORDED.value,
                checkpoint_type=request.checkpoint_type.value,
                metadata_json=dump_json(request.metadata),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(checkpoint)
            self._add_log(
                session=session,
                job_id=job_id,
                action="checkpoint_recorded",
                message=request.message,
                status_from=None,
                status_to=None,
                details={"checkpoint_id": checkpoint.checkpoint_id, "stage": request.stage},
            )
            session.commit()
            session.refresh(checkpoint)
            return _to_checkpoint_view(checkpoint)

    def finalize_cancel(self, *, job_id: str) -> bool:
        """Finish a cooperative cancel observed by the worker."""

        now = utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(AgentJob)
                .where(
                    col(AgentJob.job_id) == job_id,
                    col(AgentJob.status) == JobStatus.RUNNING.value,
                    col(AgentJob.cancel_requested).is_(True),
                )
                .values(
                    status=JobStatus.CANCELLED.value,
                    updated_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                job_id=job_id,
                action="cancelled",
                message="Cancel observed by worker at a safe point.",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.CANCELLED,
                details={},
            )
            session.commit()
            return True

    # -- manual actions -------------------------------------------------------

    def cancel_job(self, *, job_id: str) -> JobView:
        """Cancel a job, or flag a running one for cooperative cancel."""

        now = utc_now()
        with self._session() as session:
            row = self._job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous == JobStatus.RUNNING:
                if not row.cancel_requested:
                    self._conditional_job_update(
                        session=session,
                        job_id=job_id,
                        expected=previous,
                        values={"cancel_requested": True, "updated_at": to_db_datetime(now)},
                        action="cancel",
                    )
                    self._add_log(
                        session=session,
                        job_id=job_id,
                        action="cancel_requested",
                        message="Cancel requested while running; waiting for a safe point.",
                        status_from=JobStatus.RUNNING,
                        status_to=JobStatus.RUNNING,
                        details={},
                    )
            elif previous in DIRECT_CANCEL_STATUSES:
                ensure_transition(previous, JobStatus.CANCELLED)
                self._conditional_job_update(
                    session=session,
                    job_id=job_id,
                    expected=previous,
                    values={
                        "status": JobStatus.CANCELLED.value,
                        "cancel_requested": True,
                        "updated_at": to_db_datetime(now),
                    },
                    action="cancel",
                )
                if previous == JobStatus.AWAITING_CHECKPOINT:
                    session.exec(
                        sa_update(AgentCheckpoint)
                        .where(
                            col(AgentCheckpoint.job_id) == job_id,
                            col(AgentCheckpoint.status) == CheckpointStatus.PENDING.value,
                        )
                        .values(
                            status=CheckpointStatus.CANCELLED.value,
                            updated_at=to_db_datetime(now),
                        )
                        .execution_options(synchronize_session=False),
                    )
                self._add_log(
                    session=session,
                    job_id=job_id,
                    action="cancelled",
                    message="Job cancelled.",
                    status_from=previous,
                    status_to=JobStatus.CANCELLED,
                    details={},
                )
            else:
                raise InvalidStateTransition(
                    f"Job cannot be cancelled from status={previous.value}.",
                    current=previous.value,
                    target=JobStatus.CANCELLED.value,
                )
            session.commit()
            refreshed = session.get(AgentJob, job_id, populate_existing=True)
            return _to_job_view(refreshed or row)

    def retry_job(self, *, job_id: str) -> JobView:
        """Manual retry: FAILED -> PENDING while attempts remain."""

        now = utc_now()
        with self._session() as session:
            row = self._job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            ensure_retry_allowed(
                status=previous,
                attempts=row.attempts,
                max_attempts=row.max_attempts,
            )
            self._conditional_job_update(
                session=session,
                job_id=job_id,
                expected=previous,
                values={
                    "status": JobStatus.PENDING.value,
                    "failure_class": None,
                    "failure_reason": None,
                    "failed_at": None,
                    "cancel_requested": False,
                    "run_after": to_db_datetime(now),
                    "started_at": None,
                    "worker_id": None,
                    "updated_at": to_db_datetime(now),
                },
                action="retry",
            )
            self._add_log(
                session=session,
                job_id=job_id,
                action="manual_retry",
                message="Job re-queued by explicit retry.",
                status_from=previous,
                status_to=JobStatus.PENDING,
                details={"attempts": row.attempts, "max_attempts": row.max_attempts},
            )
            session.commit()
            refreshed = session.get(AgentJob, job_id, populate_existing=True)
            return _to_job_view(refreshed or row)

    def reconcile_running_jobs(
        self,
        *,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> list[str]:
        """Return stale RUNNING claims to the queue without consuming an attempt."""

        current = now or utc_now()
        cutoff = to_db_datetime(current - stale_after)
        reconciled: list[str] = []
        with self._session() as session:
            rows = session.exec(
                select(AgentJob).where(
                    AgentJob.status == JobStatus.RUNNING.value,
                    col(AgentJob.started_at) <= cutoff,
                ),
            ).all()
            for row in rows:
                target = JobStatus.CANCELLED if row.cancel_requested else JobStatus.PENDING
                ensure_transition(JobStatus.RUNNING, target)
                result = session.exec(
                    sa_update(AgentJob)
                    .where(
                        col(AgentJob.job_id) == row.job_id,
                        col(AgentJob.status) == JobStatus.RUNNING.value,
                    )
                    .values(
                        status=target.value,
                        run_after=to_db_datetime(current),
                        worker_id=None,
                        updated_at=to_db_datetime(current),
                    )
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    continue
                self._add_log(
                    session=session,
                    job_id=row.job_id,
                    action="reconciled",
                    message="Stale running claim reconciled by admin.",
                    status_from=JobStatus.RUNNING,
                    status_to=target,
                    details={"previous_worker_id": row.worker_id},
                )
                reconciled.append(row.job_id)
            session.commit()
        return reconciled

    # -- checkpoints ----------------------------------------------------------

    def get_checkpoint(self, *, checkpoint_id: str) -> CheckpointView | None:
        with self._session() as session:
            row = session.get(AgentCheckpoint, checkpoint_id)
            return _to_checkpoint_view(row) if row is not None else None

    def list_checkpoints(self, *, job_id: str) -> list[CheckpointView]:
        with self._session() as session:
            rows = session.exec(
                select(AgentCheckpoint)
                .where(AgentCheckpoint.job_id == job_id)
                .order_by(col(AgentCheckpoint.created_at).asc()),
            ).all()
            return [_to_checkpoint_view(row) for row in rows]

    def list_checkpoints_by_status(
        self,
        *,
        status: CheckpointStatus,
        limit: int = 100,
    ) -> list[CheckpointView]:
        with self._session() as session:
            rows = session.exec(
                select(AgentCheckpoint)
                .where(AgentCheckpoint.status == status.value)
                .order_by(col(AgentCheckpoint.created_at).asc())
                .limit(limit),
            ).all()
            return [_to_checkpoint_view(row) for row in rows]

    def approve_checkpoint(
        self,
        *,
        checkpoint_id: str,
        reviewer_id: str,
        now: datetime | None = None,
    ) -> CheckpointView:
        """Approve a pending checkpoint; the owning job becomes claimable."""

        current = now or utc_now()
        with self._session() as session:
            checkpoint, job = self._decidable_checkpoint(
                session=session,
                checkpoint_id=checkpoint_id,
            )
            ensure_transition(JobStatus.AWAITING_CHECKPOINT, JobStatus.RUNNING)
            self._decide_checkpoint(
                session=session,
                checkpoint_id=checkpoint_id,
                values={
                    "status": CheckpointStatus.APPROVED.value,
                    "reviewer_id": reviewer_id,
                    "reviewed_at": to_db_datetime(current),
                    "updated_at": to_db_datetime(current),
                },
            )
            self._add_log(
                session=session,
                job_id=job.job_id,
                action="checkpoint_approved",
                message=f"Checkpoint '{checkpoint.stage}' approved by {reviewer_id}.",
                status_from=JobStatus.AWAITING_CHECKPOINT,
                status_to=JobStatus.AWAITING_CHECKPOINT,
                details={"checkpoint_id": checkpoint_id, "reviewer_id": reviewer_id},
            )
            session.commit()
            refreshed = session.get(AgentCheckpoint, checkpoint_id, populate_existing=True)
            return _to_checkpoint_view(refreshed or checkpoint)

    def reject_checkpoint(
        self,
        *,
        checkpoint_id: str,
        reviewer_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> CheckpointView:
        """Reject a pending checkpoint and fail the owning job terminally."""

        current = now or utc_now()
        with self._session() as session:
            checkpoint, job = self._decidable_checkpoint(
                session=session,
                checkpoint_id=checkpoint_id,
            )
            ensure_transition(JobStatus.AWAITING_CHECKPOINT, JobStatus.FAILED)
            self._decide_checkpoint(
                session=session,
                checkpoint_id=checkpoint_id,
                values={
                    "status": CheckpointStatus.REJECTED.value,
                    "reviewer_id": reviewer_id,
                    "reviewed_at": to_db_datetime(current),
                    "rejection_reason": reason,
                    "updated_at": to_db_datetime(current),
                },
            )
            self._conditional_job_update(
                session=session,
                job_id=job.job_id,
                expected=JobStatus.AWAITING_CHECKPOINT,
                values={
                    "status": JobStatus.FAILED.value,
                    "failure_class": FailureClass.CHECKPOINT_REJECTED.value,
                    "failure_reason": reason,
                    "failed_at": to_db_datetime(current),
                    "updated_at": to_db_datetime(current),
                },
                action="reject",
            )
            self._add_log(
                session=session,
                job_id=job.job_id,
                action="checkpoint_rejected",
                message=reason,
                status_from=JobStatus.AWAITING_CHECKPOINT,
                status_to=JobStatus.FAILED,
                details={"checkpoint_id": checkpoint_id, "reviewer_id": reviewer_id},
            )
            session.commit()
            refreshed = session.get(AgentCheckpoint, checkpoint_id, populate_existing=True)
            return _to_checkpoint_view(refreshed or checkpoint)

    def expire_checkpoints(self, *, now: datetime | None = None) -> list[CheckpointView]:
        """Expire pending checkpoints past ``expires_at`` and fail their jobs."""

        current = now or utc_now()
        expired: list[str] = []
        with self._session() as session:
            rows = session.exec(
                select(AgentCheckpoint).where(
                    AgentCheckpoint.status == CheckpointStatus.PENDING.value,
                    col(AgentCheckpoint.expires_at).is_not(None),
                    col(AgentCheckpoint.expires_at) <= to_db_datetime(current),
                ),
            ).all()
            for row in rows:
                result = session.exec(
                    sa_update(AgentCheckpoint)
                    .where(
                        col(AgentCheckpoint.checkpoint_id) == row.checkpoint_id,
                        col(AgentCheckpoint.status) == CheckpointStatus.PENDING.value,
                    )
                    .values(
                        status=CheckpointStatus.EXPIRED.value,
                        updated_at=to_db_datetime(current),
                    )
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    continue
                reason = f"Checkpoint '{row.stage}' expired without review."
                session.exec(
                    sa_update(AgentJob)
                    .where(
                        col(AgentJob.job_id) == row.job_id,
                        col(AgentJob.status) == JobStatus.AWAITING_CHECKPOINT.value,
                    )
                    .values(
                        status=JobStatus.FAILED.value,
                        failure_class=FailureClass.CHECKPOINT_EXPIRED.value,
                        failure_reason=reason,
                        failed_at=to_db_datetime(current),
                        updated_at=to_db_datetime(current),
                    )
                    .execution_options(synchronize_session=False),
                )
                self._add_log(
                    session=session,
                    job_id=row.job_id,
                    action="checkpoint_expired",
                    message=reason,
                    status_from=JobStatus.AWAITING_CHECKPOINT,
                    status_to=JobStatus.FAILED,
                    details={"checkpoint_id": row.checkpoint_id},
                )
                expired.append(row.checkpoint_id)
            session.commit()
            expired_rows = [
                session.get(AgentCheckpoint, checkpoint_id, populate_existing=True)
                for checkpoint_id in expired
            ]
            return [_to_checkpoint_view(row) for row in expired_rows if row is not None]

    # -- logs -----------------------------------------------------------------

    def add_job_log(
        self,
        *,
        job_id: str,
        action: str,
        message: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append an executor-supplied log entry."""

        with self._session() as session:
            self._add_log(
                session=session,
                job_id=job_id,
                action=action,
                message=message,
                status_from=None,
                status_to=None,
                details=details or {},
            )
            session.commit()

    # -- helpers --------------------------------------------------------------

    def _job_row(self, *, session: Session, job_id: str) -> AgentJob:
        row = session.get(AgentJob, job_id)
        if row is None:
            raise JobNotFound(f"Job not found: {job_id}")
        return row

    def _decidable_checkpoint(
        self,
        *,
        session: Session,
        checkpoint_id: str,
    ) -> tuple[AgentCheckpoint, AgentJob]:
        checkpoint = session.get(AgentCheckpoint, checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFound(f"Checkpoint not found: {checkpoint_id}")
        if checkpoint.status != CheckpointStatus.PENDING.value:
            raise CheckpointAlreadyDecided(
                f"Checkpoint {checkpoint_id} is already {checkpoint.status}.",
                current=checkpoint.status,
            )
        job = self._job_row(session=session, job_id=checkpoint.job_id)
        if job.status != JobStatus.AWAITING_CHECKPOINT.value:
            raise InvalidStateTransition(
                f"Job {job.job_id} is {job.status}, not awaiting a checkpoint.",
                current=job.status,
            )
        return checkpoint, job

    def _decide_checkpoint(
        self,
        *,
        session: Session,
        checkpoint_id: str,
        values: dict[str, Any],
    ) -> None:
        result = session.exec(
            sa_update(AgentCheckpoint)
            .where(
                col(AgentCheckpoint.checkpoint_id) == checkpoint_id,
                col(AgentCheckpoint.status) == CheckpointStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            session.rollback()
            raise CheckpointAlreadyDecided(
                f"Checkpoint {checkpoint_id} was decided concurrently.",
            )

    def _conditional_job_update(
        self,
        *,
        session: Session,
        job_id: str,
        expected: JobStatus,
        values: dict[str, Any],
        action: str,
    ) -> None:
        result = session.exec(
            sa_update(AgentJob)
            .where(
                col(AgentJob.job_id) == job_id,
                col(AgentJob.status) == expected.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            session.rollback()
            raise InvalidStateTransition(
                f"Job state changed concurrently during {action}; "
                f"please retry the request (job_id={job_id}).",
                current=expected.value,
            )

    def _add_log(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        action: str,
        message: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AgentJobLog(
                job_id=job_id,
                action=action,
                message=message,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_job_view(row: AgentJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        job_type=row.job_type,
        status=JobStatus(row.status),
        priority=row.priority,
        task_description=row.task_description,
        input_data=load_json(row.input_json) or {},
        output_data=load_json(row.output_json),
        orchestrator_id=row.orchestrator_id,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        failure_reason=row.failure_reason,
        failed_at=optional_utc(row.failed_at),
        cancel_requested=bool(row.cancel_requested),
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_checkpoint_view(row: AgentCheckpoint) -> CheckpointView:
    return CheckpointView(
        checkpoint_id=row.checkpoint_id,
        job_id=row.job_id,
        stage=row.stage,
        message=row.message,
        data=load_json(row.data_json),
        status=CheckpointStatus(row.status),
        checkpoint_type=CheckpointType(row.checkpoint_type),
        metadata=load_json(row.metadata_json),
        reviewer_id=row.reviewer_id,
        reviewed_at=optional_utc(row.reviewed_at),
        rejection_reason=row.rejection_reason,
        expires_at=optional_utc(row.expires_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_log_view(row: AgentJobLog) -> JobLogView:
    return JobLogView(
        log_id=row.id or 0,
        job_id=row.job_id,
        action=row.action,
        message=row.message,
        status_from=JobStatus(row.status_from) if row.status_from is not None else None,
        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=load_json(row.details_json) or {},
    )
