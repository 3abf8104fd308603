"""Create agent job, checkpoint and log tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("task_description", sa.Text(), nullable=False),
        sa.Column("input_json", sa.Text(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("orchestrator_id", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_requested",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_agent_jobs_user_id", "agent_jobs", ["user_id"], unique=False)
    op.create_index("ix_agent_jobs_job_type", "agent_jobs", ["job_type"], unique=False)
    op.create_index("ix_agent_jobs_status", "agent_jobs", ["status"], unique=False)
    op.create_index(
        "ix_agent_jobs_orchestrator_id",
        "agent_jobs",
        ["orchestrator_id"],
        unique=True,
    )
    op.create_index("ix_agent_jobs_failure_class", "agent_jobs", ["failure_class"], unique=False)
    op.create_index("ix_agent_jobs_worker_id", "agent_jobs", ["worker_id"], unique=False)
    op.create_index(
        "idx_agent_jobs_queue",
        "agent_jobs",
        ["status", "priority", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_agent_jobs_owner",
        "agent_jobs",
        ["user_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "agent_checkpoints",
        sa.Column("checkpoint_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data_json", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column(
            "checkpoint_type",
            sa.String(),
            nullable=False,
            server_default=sa.text("'approval_required'"),
        ),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["agent_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("checkpoint_id"),
    )
    op.create_index("ix_agent_checkpoints_job_id", "agent_checkpoints", ["job_id"], unique=False)
    op.create_index("ix_agent_checkpoints_status", "agent_checkpoints", ["status"], unique=False)
    op.create_index(
        "idx_agent_checkpoints_job_time",
        "agent_checkpoints",
        ["job_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_agent_checkpoints_one_pending",
        "agent_checkpoints",
        ["job_id"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "agent_job_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["agent_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_agent_job_logs_job_id", "agent_job_logs", ["job_id"], unique=False)
    op.create_index("ix_agent_job_logs_action", "agent_job_logs", ["action"], unique=False)
    op.create_index(
        "idx_agent_job_logs_job_time",
        "agent_job_logs",
        ["job_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_agent_job_logs_job_time", table_name="agent_job_logs")
    op.drop_index("ix_agent_job_logs_action", table_name="agent_job_logs")
    op.drop_index("ix_agent_job_logs_job_id", table_name="agent_job_logs")
    op.drop_table("agent_job_logs")
    op.drop_index("uq_agent_checkpoints_one_pending", table_name="agent_checkpoints")
    op.drop_index("idx_agent_checkpoints_job_time", table_name="agent_checkpoints")
    op.drop_index("ix_agent_checkpoints_status", table_name="agent_checkpoints")
    op.drop_index("ix_agent_checkpoints_job_id", table_name="agent_checkpoints")
    op.drop_table("agent_checkpoints")
    op.drop_index("idx_agent_jobs_owner", table_name="agent_jobs")
    op.drop_index("idx_agent_jobs_queue", table_name="agent_jobs")
    op.drop_index("ix_agent_jobs_worker_id", table_name="agent_jobs")
    op.drop_index("ix_agent_jobs_failure_class", table_name="agent_jobs")
    op.drop_index("ix_agent_jobs_orchestrator_id", table_name="agent_jobs")
    op.drop_index("ix_agent_jobs_status", table_name="agent_jobs")
    op.drop_index("ix_agent_jobs_job_type", table_name="agent_jobs")
    op.drop_index("ix_agent_jobs_user_id", table_name="agent_jobs")
    op.drop_table("agent_jobs")
