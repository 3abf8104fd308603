from __future__ import annotations

import allure
import pytest

from agent_pipeline.pipeline.errors import (
    InvalidStateTransition,
    JobNotFound,
    PermissionDenied,
    ValidationError,
)
from agent_pipeline.pipeline.handlers import default_executor
from agent_pipeline.pipeline.models import Actor, FailureClass, JobStatus
from agent_pipeline.pipeline.services import JobService, OrchestratorFacade

pytestmark = [
    allure.epic("Agent Jobs"),
    allure.feature("Orchestrator Facade"),
]


def _facade(repository, wakes: list[str] | None = None) -> OrchestratorFacade:
    return OrchestratorFacade(
        repository=repository,
        job_types=default_executor().job_types,
        on_submitted=(lambda: wakes.append("wake")) if wakes is not None else None,
    )


def test_submit_task_returns_orchestrator_id_and_pending_job(repository) -> None:
    wakes: list[str] = []
    facade = _facade(repository, wakes)

    orchestrator_id = facade.submit_task(
        "  Summarize yesterday's incidents ",
        {"team": "sre"},
        "alice",
        priority=8,
    )

    assert orchestrator_id.startswith("orch_")
    job = facade.get_task_status(orchestrator_id)
    assert job.status == JobStatus.PENDING
    assert job.user_id == "alice"
    assert job.priority == 8
    assert job.job_type == "simple-task"
    assert job.task_description == "Summarize yesterday's incidents"
    assert job.input_data == {
        "instruction": "Summarize yesterday's incidents",
        "context": {"team": "sre"},
    }
    assert wakes == ["wake"]


def test_submit_task_clamps_priority(repository) -> None:
    facade = _facade(repository)

    high = facade.get_task_status(facade.submit_task("do it", None, "alice", priority=99))
    low = facade.get_task_status(facade.submit_task("do it", None, "alice", priority=-3))

    assert high.priority == 10
    assert low.priority == 1


@pytest.mark.parametrize(
    ("instruction", "user_id", "priority"),
    [("", "alice", 5), ("   ", "alice", 5), ("work", "", 5), ("work", "alice", "urgent")],
)
def test_submit_task_validates_input(repository, instruction, user_id, priority) -> None:
    with pytest.raises(ValidationError):
        _facade(repository).submit_task(instruction, None, user_id, priority=priority)
    assert repository.list_jobs() == []


def test_submit_task_does_not_deduplicate(repository) -> None:
    facade = _facade(repository)

    first = facade.submit_task("same thing", None, "alice")
    second = facade.submit_task("same thing", None, "alice")

    assert first != second
    assert len(repository.list_jobs()) == 2


def test_job_type_resolution_order(repository) -> None:
    facade = _facade(repository)

    explicit = facade.submit_task(
        "write code",
        {"job_type": "data-processing"},
        "alice",
        job_type="x",
    )
    from_context = facade.submit_task("write code", {"job_type": "data-processing"}, "alice")
    routed = facade.submit_task("Implement the API client", None, "alice")

    assert facade.get_task_status(explicit).job_type == "x"
    assert facade.get_task_status(from_context).job_type == "data-processing"
    assert facade.get_task_status(routed).job_type == "code-generation"


def test_unknown_orchestrator_id_raises(repository) -> None:
    with pytest.raises(JobNotFound):
        _facade(repository).get_task_status("orch_missing")


def test_job_service_scopes_jobs_to_owner_unless_admin(repository) -> None:
    facade = _facade(repository)
    facade.submit_task("alice job", None, "alice")
    facade.submit_task("bob job", None, "bob")
    service = JobService(repository=repository)

    own = service.list_jobs(Actor(user_id="alice"))
    everything = service.list_jobs(Actor(user_id="root", is_admin=True))

    assert [job.user_id for job in own] == ["alice"]
    assert {job.user_id for job in everything} == {"alice", "bob"}


def test_job_service_denies_foreign_jobs(repository) -> None:
    facade = _facade(repository)
    job = facade.get_task_status(facade.submit_task("alice job", None, "alice"))
    service = JobService(repository=repository)

    with pytest.raises(PermissionDenied):
        service.get_job(Actor(user_id="mallory"), job.job_id)
    with pytest.raises(PermissionDenied):
        service.cancel_job(Actor(user_id="mallory"), job.job_id)
    details = service.get_job(Actor(user_id="admin", is_admin=True), job.job_id)
    assert details.job.job_id == job.job_id
    with pytest.raises(JobNotFound):
        service.get_job(Actor(user_id="alice"), "missing")


def test_job_service_cancel_and_retry(repository) -> None:
    facade = _facade(repository)
    changes: list[str] = []
    service = JobService(repository=repository, on_changed=lambda: changes.append("changed"))
    owner = Actor(user_id="alice")

    to_cancel = facade.get_task_status(facade.submit_task("cancel me", None, "alice"))
    cancelled = service.cancel_job(owner, to_cancel.job_id)
    assert cancelled.status == JobStatus.CANCELLED
    with pytest.raises(InvalidStateTransition):
        service.retry_job(owner, to_cancel.job_id)

    to_retry = facade.get_task_status(facade.submit_task("retry me", None, "alice"))
    repository.claim_job(job_id=to_retry.job_id, worker_id="w1")
    repository.fail_job(
        job_id=to_retry.job_id,
        failure_class=FailureClass.EXECUTOR_FAILURE,
        reason="flaky",
    )
    retried = service.retry_job(owner, to_retry.job_id)
    assert retried.status == JobStatus.PENDING
    assert changes == ["changed"]
