"""SQLModel ORM tables for the agent job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text, text
from sqlmodel import Field, SQLModel


class AgentJob(SQLModel, table=True):
    __tablename__ = "agent_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_jobs_queue", "status", "priority", "created_at"),
        Index("idx_agent_jobs_owner", "user_id", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    job_type: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=5)
    task_description: str = Field(sa_column=Column(Text, nullable=False))
    input_json: str | None = Field(default=None, sa_column=Column(Text))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    orchestrator_id: str | None = Field(default=None, unique=True, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    failure_class: str | None = Field(default=None, index=True)
    failure_reason: str | None = Field(default=None, sa_column=Column(Text))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancel_requested: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentCheckpoint(SQLModel, table=True):
    __tablename__ = "agent_checkpoints"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_checkpoints_job_time", "job_id", "created_at"),
        Index(
            "uq_agent_checkpoints_one_pending",
            "job_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
        ),
    )

    checkpoint_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    stage: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    data_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    checkpoint_type: str = Field(
        default="approval_required",
        sa_column=Column(String, nullable=False, server_default=text("'approval_required'")),
    )
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    reviewer_id: str | None = None
    reviewed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    rejection_reason: str | None = Field(default=None, sa_column=Column(Text))
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentJobLog(SQLModel, table=True):
    __tablename__ = "agent_job_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_job_logs_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    action: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
