from __future__ import annotations

import json
import re
from pathlib import Path

import allure
from click.testing import CliRunner

from agent_pipeline.main import agent_pipeline

pytestmark = [
    allure.epic("Agent Jobs"),
    allure.feature("CLI Ops"),
]


def _invoke(runner: CliRunner, *args: str):
    result = runner.invoke(agent_pipeline, list(args))
    return result


def _submitted_job_id(output: str) -> str:
    match = re.search(r"job_id=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_cli_submit_review_and_complete_code_generation(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    context = {"files": [{"path": "app/main.py", "content": "print('hi')"}]}

    submit = _invoke(
        runner,
        "jobs",
        "submit",
        "--db-path",
        db_path,
        "--instruction",
        "Implement the entrypoint",
        "--user-id",
        "alice",
        "--context-json",
        json.dumps(context),
    )
    assert submit.exit_code == 0, submit.output
    assert "Job submitted: orchestrator_id=orch_" in submit.output
    assert "type=code-generation" in submit.output
    job_id = _submitted_job_id(submit.output)

    first_run = _invoke(runner, "worker", "run", "--db-path", db_path, "--loop")
    assert first_run.exit_code == 0, first_run.output
    assert "processed=1" in first_run.output
    assert "paused=1" in first_run.output

    pending = _invoke(runner, "checkpoints", "list", "--db-path", db_path)
    assert pending.exit_code == 0, pending.output
    assert "Pending checkpoints: 1" in pending.output
    match = re.search(r"^\s+(\S+) job=" + re.escape(job_id), pending.output, re.MULTILINE)
    assert match is not None, pending.output
    checkpoint_id = match.group(1)

    approve = _invoke(
        runner,
        "checkpoints",
        "approve",
        "--db-path",
        db_path,
        "--checkpoint-id",
        checkpoint_id,
        "--reviewer-id",
        "bob",
    )
    assert approve.exit_code == 0, approve.output
    assert f"Checkpoint approved: {checkpoint_id}" in approve.output

    second_run = _invoke(runner, "worker", "run", "--db-path", db_path, "--loop")
    assert second_run.exit_code == 0, second_run.output
    assert "succeeded=1" in second_run.output

    inspect = _invoke(
        runner,
        "jobs",
        "inspect",
        "--db-path",
        db_path,
        "--job-id",
        job_id,
        "--user-id",
        "alice",
    )
    assert inspect.exit_code == 0, inspect.output
    assert "Status: completed" in inspect.output
    assert "reviewer=bob" in inspect.output
    assert "checkpoint_approved" in inspect.output
    assert '"files_created"' in inspect.output


def test_cli_reject_fails_job(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    submit = _invoke(
        runner,
        "jobs",
        "submit",
        "--db-path",
        db_path,
        "--instruction",
        "Clean the csv dataset",
        "--user-id",
        "alice",
    )
    job_id = _submitted_job_id(submit.output)
    assert "type=data-processing" in submit.output
    _invoke(runner, "worker", "run", "--db-path", db_path, "--once")

    listing = _invoke(runner, "checkpoints", "list", "--db-path", db_path, "--job-id", job_id)
    assert "Checkpoints: 1" in listing.output
    assert "type=approval_required status=pending" in listing.output
    checkpoint_id = re.search(r"^\s+(\S+) job=", listing.output, re.MULTILINE).group(1)

    reject = _invoke(
        runner,
        "checkpoints",
        "reject",
        "--db-path",
        db_path,
        "--checkpoint-id",
        checkpoint_id,
        "--reviewer-id",
        "bob",
        "--reason",
        "wrong source file",
    )
    assert reject.exit_code == 0, reject.output
    assert f"(job {job_id} failed)" in reject.output

    failed = _invoke(
        runner,
        "jobs",
        "list",
        "--db-path",
        db_path,
        "--user-id",
        "alice",
        "--status",
        "failed",
    )
    assert "Jobs: 1" in failed.output
    assert job_id in failed.output


def test_cli_cancel_and_permission_errors(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    submit = _invoke(
        runner,
        "jobs",
        "submit",
        "--db-path",
        db_path,
        "--instruction",
        "Say hello",
        "--user-id",
        "alice",
        "--priority",
        "42",
    )
    assert "priority=10" in submit.output
    job_id = _submitted_job_id(submit.output)

    denied = _invoke(
        runner,
        "jobs",
        "cancel",
        "--db-path",
        db_path,
        "--job-id",
        job_id,
        "--user-id",
        "mallory",
    )
    assert denied.exit_code == 1
    assert "may not access job" in denied.output

    cancel = _invoke(
        runner,
        "jobs",
        "cancel",
        "--db-path",
        db_path,
        "--job-id",
        job_id,
        "--user-id",
        "alice",
    )
    assert cancel.exit_code == 0, cancel.output
    assert f"Job cancelled: {job_id}" in cancel.output

    again = _invoke(
        runner,
        "jobs",
        "cancel",
        "--db-path",
        db_path,
        "--job-id",
        job_id,
        "--user-id",
        "alice",
    )
    assert again.exit_code == 1
    assert "cannot be cancelled" in again.output


def test_cli_rejects_invalid_context_json(tmp_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        "jobs",
        "submit",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--instruction",
        "anything",
        "--user-id",
        "alice",
        "--context-json",
        "{not json",
    )

    assert result.exit_code == 1
    assert "--context-json is not valid JSON" in result.output


def test_cli_worker_modes_are_exclusive(tmp_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        "worker",
        "run",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--once",
        "--loop",
    )

    assert result.exit_code == 2
    assert "Use only one of" in result.output


def test_cli_worker_stats_and_reconcile(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    _invoke(
        runner,
        "jobs",
        "submit",
        "--db-path",
        db_path,
        "--instruction",
        "Say hello",
        "--user-id",
        "alice",
    )

    stats = _invoke(runner, "worker", "stats", "--db-path", db_path)
    assert stats.exit_code == 0, stats.output
    assert "Jobs by status:" in stats.output
    assert "pending: 1" in stats.output
    assert "running=no" in stats.output

    reconcile = _invoke(runner, "worker", "reconcile", "--db-path", db_path, "--stale-seconds", "0")
    assert reconcile.exit_code == 0, reconcile.output
    assert "Reconciled jobs: 0" in reconcile.output


def test_cli_reports_malformed_env_setting(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_PIPELINE_MAX_CONCURRENT_JOBS", "abc")
    runner = CliRunner()

    result = _invoke(runner, "worker", "stats", "--db-path", str(tmp_path / "cli.db"))

    assert result.exit_code == 1
    assert "AGENT_PIPELINE_MAX_CONCURRENT_JOBS" in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)
