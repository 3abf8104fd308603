from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from agent_pipeline.pipeline.errors import (
    CheckpointAlreadyDecided,
    InvalidStateTransition,
    JobNotFound,
    StoreUnavailable,
    ValidationError,
)
from agent_pipeline.pipeline.models import (
    CheckpointRequest,
    CheckpointStatus,
    CheckpointType,
    FailureClass,
    JobCreate,
    JobStatus,
)
from agent_pipeline.pipeline.repository import JobRepository
from agent_pipeline.storage.common import utc_now

pytestmark = [
    allure.epic("Agent Jobs"),
    allure.feature("Job Store"),
]


def test_create_job_is_pending_with_creation_log(repository, make_job) -> None:
    job = make_job(orchestrator_id="orch_abc")

    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.cancel_requested is False
    assert repository.get_job_by_orchestrator_id(orchestrator_id="orch_abc") == job

    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [entry.action for entry in details.logs] == ["created"]
    assert details.logs[0].status_to == JobStatus.PENDING


def test_claim_order_is_priority_desc_then_oldest_first(repository, make_job) -> None:
    low = make_job(priority=3)
    high_old = make_job(priority=9)
    high_new = make_job(priority=9)

    claimed = [
        repository.claim_next_job(worker_id="w1"),
        repository.claim_next_job(worker_id="w1"),
        repository.claim_next_job(worker_id="w1"),
    ]

    assert [job.job_id for job in claimed if job is not None] == [
        high_old.job_id,
        high_new.job_id,
        low.job_id,
    ]
    assert repository.claim_next_job(worker_id="w1") is None


def test_claim_passes_through_queued_and_logs_both_hops(repository, make_job) -> None:
    job = make_job()

    claimed = repository.claim_next_job(worker_id="worker-a")

    assert claimed is not None
    assert claimed.status == JobStatus.RUNNING
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at is not None
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    hops = [(entry.action, entry.status_from, entry.status_to) for entry in details.logs]
    assert hops == [
        ("created", None, JobStatus.PENDING),
        ("queued", JobStatus.PENDING, JobStatus.QUEUED),
        ("claimed", JobStatus.QUEUED, JobStatus.RUNNING),
    ]


def test_claim_job_loser_of_race_gets_none(repository, make_job) -> None:
    job = make_job()

    first = repository.claim_job(job_id=job.job_id, worker_id="w1")
    second = repository.claim_job(job_id=job.job_id, worker_id="w2")

    assert first is not None
    assert first.worker_id == "w1"
    assert second is None
    with pytest.raises(JobNotFound):
        repository.claim_job(job_id="missing", worker_id="w1")


def test_concurrent_claims_hand_out_each_job_once(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    setup = JobRepository(db_path)
    setup.init_schema()

    for index in range(3):
        setup.create_job(
            JobCreate(user_id="alice", job_type="simple-task", task_description=f"job {index}"),
        )
    setup.close()

    barrier = threading.Barrier(4)
    claimed: list[str] = []
    lock = threading.Lock()

    def _claimer(worker_id: str) -> None:
        repository = JobRepository(db_path, sqlite_busy_timeout_ms=10_000)
        try:
            barrier.wait(timeout=5)
            while True:
                job = repository.claim_next_job(worker_id=worker_id)
                if job is None:
                    return
                with lock:
                    claimed.append(job.job_id)
        finally:
            repository.close()

    threads = [threading.Thread(target=_claimer, args=(f"w{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claimed) == 3
    assert len(set(claimed)) == 3


def test_schedule_retry_respects_run_after(repository, make_job) -> None:
    job = make_job()
    assert repository.claim_next_job(worker_id="w1") is not None
    run_after = utc_now() + timedelta(minutes=5)

    assert repository.schedule_retry(job_id=job.job_id, run_after=run_after, reason="boom")

    pending = repository.get_job(job_id=job.job_id)
    assert pending is not None
    assert pending.status == JobStatus.PENDING
    assert pending.attempts == 1
    assert pending.failure_reason is None
    assert repository.claim_next_job(worker_id="w1") is None
    later = repository.claim_next_job(worker_id="w1", now=run_after + timedelta(seconds=1))
    assert later is not None
    assert later.job_id == job.job_id


def test_fail_job_records_failure_and_counts_attempt(repository, make_job) -> None:
    job = make_job()
    repository.claim_next_job(worker_id="w1")

    assert repository.fail_job(
        job_id=job.job_id,
        failure_class=FailureClass.EXECUTOR_NON_RETRYABLE,
        reason="bad input",
    )
    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 1
    assert failed.failure_class == FailureClass.EXECUTOR_NON_RETRYABLE
    assert failed.failure_reason == "bad input"
    assert failed.failed_at is not None
    assert repository.fail_job(
        job_id=job.job_id,
        failure_class=FailureClass.EXECUTOR_FAILURE,
        reason="again",
    ) is False


def test_cancel_pending_job_is_immediate(repository, make_job) -> None:
    job = make_job()

    cancelled = repository.cancel_job(job_id=job.job_id)

    assert cancelled.status == JobStatus.CANCELLED
    assert repository.claim_next_job(worker_id="w1") is None
    with pytest.raises(InvalidStateTransition, match="cannot be cancelled"):
        repository.cancel_job(job_id=job.job_id)


def test_cancel_running_job_sets_flag_and_blocks_completion(repository, make_job) -> None:
    job = make_job()
    repository.claim_next_job(worker_id="w1")

    flagged = repository.cancel_job(job_id=job.job_id)

    assert flagged.status == JobStatus.RUNNING
    assert flagged.cancel_requested is True
    assert repository.is_cancel_requested(job_id=job.job_id) is True
    assert repository.complete_job(job_id=job.job_id, result={"ok": True}) is False
    assert repository.finalize_cancel(job_id=job.job_id) is True
    final = repository.get_job(job_id=job.job_id)
    assert final is not None
    assert final.status == JobStatus.CANCELLED
    assert final.output_data is None


def test_cancel_completed_job_is_rejected(repository, make_job) -> None:
    job = make_job()
    repository.claim_next_job(worker_id="w1")
    assert repository.complete_job(job_id=job.job_id, result={"answer": 42})

    completed = repository.get_job(job_id=job.job_id)
    assert completed is not None
    assert completed.output_data == {"answer": 42}
    assert completed.completed_at is not None
    with pytest.raises(InvalidStateTransition):
        repository.cancel_job(job_id=job.job_id)


def test_manual_retry_resets_failure_but_keeps_attempts(repository, make_job) -> None:
    job = make_job(max_attempts=2)
    repository.claim_next_job(worker_id="w1")
    repository.fail_job(
        job_id=job.job_id,
        failure_class=FailureClass.EXECUTOR_NON_RETRYABLE,
        reason="nope",
    )

    retried = repository.retry_job(job_id=job.job_id)

    assert retried.status == JobStatus.PENDING
    assert retried.attempts == 1
    assert retried.failure_reason is None
    assert retried.failure_class is None
    assert retried.failed_at is None

    repository.claim_next_job(worker_id="w1")
    repository.fail_job(
        job_id=job.job_id,
        failure_class=FailureClass.EXECUTOR_FAILURE,
        reason="still failing",
    )
    with pytest.raises(InvalidStateTransition, match="Retry limit reached"):
        repository.retry_job(job_id=job.job_id)


def test_retry_of_non_failed_job_is_rejected(repository, make_job) -> None:
    job = make_job()
    with pytest.raises(InvalidStateTransition):
        repository.retry_job(job_id=job.job_id)
    with pytest.raises(JobNotFound):
        repository.retry_job(job_id="missing")


def test_pause_then_approve_makes_job_claimable_again(repository, make_job) -> None:
    job = make_job(job_type="code-generation")
    repository.claim_next_job(worker_id="w1")

    checkpoint = repository.pause_job(
        job_id=job.job_id,
        request=CheckpointRequest(stage="file_review", message="Review files", data={"n": 1}),
    )

    assert checkpoint is not None
    assert checkpoint.status == CheckpointStatus.PENDING
    assert checkpoint.data == {"n": 1}
    paused = repository.get_job(job_id=job.job_id)
    assert paused is not None
    assert paused.status == JobStatus.AWAITING_CHECKPOINT
    assert repository.claim_next_job(worker_id="w1") is None

    approved = repository.approve_checkpoint(
        checkpoint_id=checkpoint.checkpoint_id,
        reviewer_id="bob",
    )
    assert approved.status == CheckpointStatus.APPROVED
    assert approved.reviewer_id == "bob"
    assert approved.reviewed_at is not None

    resumed = repository.claim_next_job(worker_id="w1")
    assert resumed is not None
    assert resumed.job_id == job.job_id
    assert resumed.status == JobStatus.RUNNING
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.logs[-1].action == "resumed"
    assert details.logs[-1].status_from == JobStatus.AWAITING_CHECKPOINT


def test_info_checkpoint_is_recorded_without_pausing(repository, make_job) -> None:
    job = make_job()
    repository.claim_next_job(worker_id="w1")

    first = repository.record_checkpoint(
        job_id=job.job_id,
        request=CheckpointRequest(
            stage="progress",
            message="Halfway there",
            data={"done": 5},
            checkpoint_type=CheckpointType.INFO,
            metadata={"handler": "batch"},
        ),
    )
    repository.record_checkpoint(
        job_id=job.job_id,
        request=CheckpointRequest(
            stage="progress",
            message="Almost done",
            checkpoint_type=CheckpointType.INFO,
        ),
    )

    assert first.status == CheckpointStatus.RECORDED
    assert first.checkpoint_type == CheckpointType.INFO
    assert first.metadata == {"handler": "batch"}
    running = repository.get_job(job_id=job.job_id)
    assert running is not None
    assert running.status == JobStatus.RUNNING
    assert repository.list_checkpoints_by_status(status=CheckpointStatus.PENDING) == []

    blocking = repository.pause_job(
        job_id=job.job_id,
        request=CheckpointRequest(stage="review", message="Review"),
    )
    assert blocking is not None
    assert blocking.checkpoint_type == CheckpointType.APPROVAL_REQUIRED
    assert len(repository.list_checkpoints(job_id=job.job_id)) == 3
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [entry.action for entry in details.logs].count("checkpoint_recorded") == 2


def test_checkpoint_type_must_match_the_operation(repository, make_job) -> None:
    job = make_job()
    repository.claim_next_job(worker_id="w1")

    with pytest.raises(ValidationError):
        repository.record_checkpoint(
            job_id=job.job_id,
            request=CheckpointRequest(stage="review", message="Needs approval"),
        )
    with pytest.raises(ValidationError):
        repository.pause_job(
            job_id=job.job_id,
            request=CheckpointRequest(
                stage="note",
                message="FYI",
                checkpoint_type=CheckpointType.INFO,
            ),
        )
    assert repository.list_checkpoints(job_id=job.job_id) == []


def test_info_checkpoint_requires_running_job(repository, make_job) -> None:
    job = make_job()

    with pytest.raises(InvalidStateTransition):
        repository.record_checkpoint(
            job_id=job.job_id,
            request=CheckpointRequest(
                stage="note",
                message="FYI",
                checkpoint_type=CheckpointType.INFO,
            ),
        )


def test_second_decision_on_checkpoint_is_rejected(repository, make_job) -> None:
    job = make_job()
    repository.claim_next_job(worker_id="w1")
    checkpoint = repository.pause_job(
        job_id=job.job_id,
        request=CheckpointRequest(stage="review", message="Check"),
    )
    assert checkpoint is not None
    repository.approve_checkpoint(checkpoint_id=checkpoint.checkpoint_id, reviewer_id="bob")

    with pytest.raises(CheckpointAlreadyDecided):
        repository.approve_checkpoint(checkpoint_id=checkpoint.checkpoint_id, reviewer_id="bob")
    with pytest.raises(CheckpointAlreadyDecided):
        repository.reject_checkpoint(
            checkpoint_id=checkpoint.checkpoint_id,
            reviewer_id="carol",
            reason="too late",
        )


def test_reject_fails_job_without_consuming_attempt(repository, make_job) -> None:
    job = make_job()
    repository.claim_next_job(worker_id="w1")
    checkpoint = repository.pause_job(
        job_id=job.job_id,
        request=CheckpointRequest(stage="review", message="Check"),
    )
    assert checkpoint is not None

    rejected = repository.reject_checkpoint(
        checkpoint_id=checkpoint.checkpoint_id,
        reviewer_id="bob",
        reason="unsafe change",
    )

    assert rejected.status == CheckpointStatus.REJECTED
    assert rejected.rejection_reason == "unsafe change"
    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.failure_class == FailureClass.CHECKPOINT_REJECTED
    assert failed.failure_reason == "unsafe change"
    assert failed.attempts == 0


def test_cancel_awaiting_job_closes_pending_checkpoint(repository, make_job) -> None:
    job = make_job()
    repository.claim_next_job(worker_id="w1")
    checkpoint = repository.pause_job(
        job_id=job.job_id,
        request=CheckpointRequest(stage="review", message="Check"),
    )
    assert checkpoint is not None

    cancelled = repository.cancel_job(job_id=job.job_id)

    assert cancelled.status == JobStatus.CANCELLED
    closed = repository.get_checkpoint(checkpoint_id=checkpoint.checkpoint_id)
    assert closed is not None
    assert closed.status == CheckpointStatus.CANCELLED
    assert repository.list_checkpoints_by_status(status=CheckpointStatus.PENDING) == []


def test_expire_checkpoints_fails_owning_job(repository, make_job) -> None:
    job = make_job()
    repository.claim_next_job(worker_id="w1")
    now = utc_now()
    checkpoint = repository.pause_job(
        job_id=job.job_id,
        request=CheckpointRequest(stage="review", message="Check"),
        expires_at=now + timedelta(minutes=10),
    )
    assert checkpoint is not None
    assert checkpoint.expires_at is not None

    assert repository.expire_checkpoints(now=now) == []
    expired = repository.expire_checkpoints(now=now + timedelta(minutes=11))

    assert [item.checkpoint_id for item in expired] == [checkpoint.checkpoint_id]
    assert expired[0].status == CheckpointStatus.EXPIRED
    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.failure_class == FailureClass.CHECKPOINT_EXPIRED


def test_reconcile_requeues_stale_running_jobs(repository, make_job) -> None:
    stale = make_job()
    flagged = make_job()
    repository.claim_next_job(worker_id="dead-worker")
    repository.claim_next_job(worker_id="dead-worker")
    repository.cancel_job(job_id=flagged.job_id)

    assert repository.reconcile_running_jobs(stale_after=timedelta(hours=1)) == []
    reconciled = repository.reconcile_running_jobs(
        stale_after=timedelta(minutes=5),
        now=utc_now() + timedelta(minutes=10),
    )

    assert set(reconciled) == {stale.job_id, flagged.job_id}
    requeued = repository.get_job(job_id=stale.job_id)
    assert requeued is not None
    assert requeued.status == JobStatus.PENDING
    assert requeued.attempts == 0
    assert requeued.worker_id is None
    cancelled = repository.get_job(job_id=flagged.job_id)
    assert cancelled is not None
    assert cancelled.status == JobStatus.CANCELLED


def test_count_jobs_by_status_is_zero_filled(repository, make_job) -> None:
    make_job()
    make_job()
    repository.claim_next_job(worker_id="w1")

    counts = repository.count_jobs_by_status()

    assert set(counts) == set(JobStatus)
    assert counts[JobStatus.PENDING] == 1
    assert counts[JobStatus.RUNNING] == 1
    assert counts[JobStatus.COMPLETED] == 0


def test_list_jobs_filters_owner_and_status(repository, make_job) -> None:
    first = make_job(user_id="alice")
    make_job(user_id="bob")
    second = make_job(user_id="alice")
    repository.cancel_job(job_id=first.job_id)

    own = repository.list_jobs(user_id="alice")
    assert [job.job_id for job in own] == [second.job_id, first.job_id]
    cancelled = repository.list_jobs(status=JobStatus.CANCELLED)
    assert [job.job_id for job in cancelled] == [first.job_id]
    assert len(repository.list_jobs(limit=2)) == 2


def test_unreachable_store_surfaces_as_store_unavailable(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "missing-dir" / "pipeline.db")
    try:
        with pytest.raises(StoreUnavailable):
            repository.get_job(job_id="any")
    finally:
        repository.close()
