"""Runtime configuration for the agent job pipeline."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from agent_pipeline.pipeline.state_machine import MAX_PRIORITY, MIN_PRIORITY

ENV_PREFIX = "AGENT_PIPELINE_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    worker_id: str = field(default_factory=lambda: _default_worker_id())
    poll_interval_seconds: float = 5.0
    max_concurrent_jobs: int = 3
    retry_base_seconds: float = 30.0
    retry_max_seconds: float = 900.0
    store_backoff_seconds: float = 5.0
    store_backoff_max_seconds: float = 60.0
    drain_timeout_seconds: float = 30.0
    stale_running_seconds: int = 1_800


@dataclass(slots=True)
class JobSettings:
    """Defaults applied to submitted jobs."""

    default_priority: int = 5
    default_max_attempts: int = 3
    default_job_type: str = "simple-task"
    checkpoint_ttl_seconds: float | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_pipeline.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    jobs: JobSettings = field(default_factory=JobSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".agent_pipeline.db")),
            sqlite_busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", "5000"),
            log_level=_env("LOG_LEVEL", "INFO").strip().upper(),
            worker=WorkerSettings(
                worker_id=_env("WORKER_ID", _default_worker_id()),
                poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", "5.0"),
                max_concurrent_jobs=_env_int("MAX_CONCURRENT_JOBS", "3"),
                retry_base_seconds=_env_float("RETRY_BASE_SECONDS", "30"),
                retry_max_seconds=_env_float("RETRY_MAX_SECONDS", "900"),
                store_backoff_seconds=_env_float("STORE_BACKOFF_SECONDS", "5.0"),
                store_backoff_max_seconds=_env_float("STORE_BACKOFF_MAX_SECONDS", "60.0"),
                drain_timeout_seconds=_env_float("DRAIN_TIMEOUT_SECONDS", "30.0"),
                stale_running_seconds=_env_int("STALE_RUNNING_SECONDS", "1800"),
            ),
            jobs=JobSettings(
                default_priority=_env_int("DEFAULT_PRIORITY", "5"),
                default_max_attempts=_env_int("DEFAULT_MAX_ATTEMPTS", "3"),
                default_job_type=_env("DEFAULT_JOB_TYPE", "simple-task").strip(),
                checkpoint_ttl_seconds=_env_optional_float("CHECKPOINT_TTL_SECONDS"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent values."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError(f"{ENV_PREFIX}SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"{ENV_PREFIX}LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )

        worker = self.worker
        if not worker.worker_id.strip():
            raise ValueError(f"{ENV_PREFIX}WORKER_ID must be non-empty.")
        if worker.poll_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}POLL_INTERVAL_SECONDS must be > 0.")
        if worker.max_concurrent_jobs < 1:
            raise ValueError(f"{ENV_PREFIX}MAX_CONCURRENT_JOBS must be >= 1.")
        if worker.retry_base_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}RETRY_BASE_SECONDS must be >= 0.")
        if worker.retry_max_seconds < worker.retry_base_seconds:
            raise ValueError(
                f"{ENV_PREFIX}RETRY_MAX_SECONDS must be >= {ENV_PREFIX}RETRY_BASE_SECONDS.",
            )
        if worker.store_backoff_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}STORE_BACKOFF_SECONDS must be > 0.")
        if worker.store_backoff_max_seconds < worker.store_backoff_seconds:
            raise ValueError(
                f"{ENV_PREFIX}STORE_BACKOFF_MAX_SECONDS must be >= "
                f"{ENV_PREFIX}STORE_BACKOFF_SECONDS.",
            )
        if worker.drain_timeout_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}DRAIN_TIMEOUT_SECONDS must be >= 0.")
        if worker.stale_running_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}STALE_RUNNING_SECONDS must be > 0.")

        jobs = self.jobs
        if not MIN_PRIORITY <= jobs.default_priority <= MAX_PRIORITY:
            raise ValueError(
                f"{ENV_PREFIX}DEFAULT_PRIORITY must be within "
                f"[{MIN_PRIORITY}, {MAX_PRIORITY}].",
            )
        if jobs.default_max_attempts < 1:
            raise ValueError(f"{ENV_PREFIX}DEFAULT_MAX_ATTEMPTS must be >= 1.")
        if not jobs.default_job_type:
            raise ValueError(f"{ENV_PREFIX}DEFAULT_JOB_TYPE must be non-empty.")
        if jobs.checkpoint_ttl_seconds is not None and jobs.checkpoint_ttl_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}CHECKPOINT_TTL_SECONDS must be > 0 when set.")


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_int(name: str, default: str) -> int:
    value = _env(name, default)
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer for {ENV_PREFIX}{name}: {value!r}") from error


def _env_float(name: str, default: str) -> float:
    value = _env(name, default)
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {ENV_PREFIX}{name}: {value!r}") from error


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {ENV_PREFIX}{name}: {value!r}") from error


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"
