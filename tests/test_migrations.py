from pathlib import Path

import allure
from sqlalchemy import inspect, text

from agent_pipeline.pipeline.repository import JobRepository

pytestmark = [
    allure.epic("Agent Jobs"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        pending_index = connection.execute(
            text(
                """
                SELECT sql
                FROM sqlite_master
                WHERE type = 'index' AND name = 'uq_agent_checkpoints_one_pending'
                """,
            ),
        ).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()

    assert version == "20261018_0001"
    assert "UNIQUE" in pending_index.upper()
    assert "pending" in pending_index
    assert str(journal_mode).lower() == "wal"

    tables = set(inspect(repository.engine).get_table_names())
    assert {"agent_jobs", "agent_checkpoints", "agent_job_logs", "alembic_version"} <= tables
    checkpoint_columns = {
        column["name"] for column in inspect(repository.engine).get_columns("agent_checkpoints")
    }
    assert {"checkpoint_type", "metadata_json", "rejection_reason"} <= checkpoint_columns
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    first = JobRepository(db_path)
    first.init_schema()
    first.close()

    second = JobRepository(db_path)
    second.init_schema()
    assert second.list_jobs() == []
    second.close()
