"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from agent_pipeline.pipeline.models import JobCreate, JobView
from agent_pipeline.pipeline.repository import JobRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    """File-backed job store migrated to head."""

    repo = JobRepository(tmp_path / "pipeline.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def make_job(repository: JobRepository) -> Callable[..., JobView]:
    """Insert a job with test defaults; keyword arguments override JobCreate fields."""

    def _make(**overrides: object) -> JobView:
        payload = {
            "user_id": "alice",
            "job_type": "simple-task",
            "task_description": "Summarize the report.",
            "input_data": {"instruction": "Summarize the report.", "context": {}},
            "priority": 5,
            "max_attempts": 3,
        }
        payload.update(overrides)
        return repository.create_job(JobCreate(**payload))  # type: ignore[arg-type]

    return _make
