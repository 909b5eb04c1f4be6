import asyncio
import json
import uuid
from pathlib import Path

import pytest
from typer.testing import CliRunner

import gateflow.persistence as persistence
from gateflow.cli import app
from gateflow.persistence import InMemoryRunRepository, SQLiteRunRepository

FIXTURES = Path(__file__).parent.parent / "fixtures"
WORKFLOW = str(FIXTURES / "video.yaml")


def _setup_repo() -> InMemoryRunRepository:
    repo = InMemoryRunRepository()
    persistence._repository_instance = repo
    return repo


@pytest.fixture(autouse=True)
def fixture_steps(monkeypatch, tmp_path):
    monkeypatch.syspath_prepend(str(FIXTURES))
    monkeypatch.setenv("GATEFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("GATEFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


def test_run_with_auto_approve_completes():
    repo = _setup_repo()
    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "run",
            WORKFLOW,
            "--steps",
            "pipeline_steps:registry",
            "--input",
            '{"prompt": "cats"}',
            "--auto-approve",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "[approval_required]" in result.output
    assert "rendering s1" in result.output
    assert "images completed: 2 success, 0 failed" in result.output
    assert result.output.strip().endswith("completed")

    runs = asyncio.run(repo.list_runs())
    assert len(runs) == 1
    assert runs[0].workflow_name == "short-video"
    assert runs[0].status == "completed"


def test_run_records_into_database_from_config_file(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    db_path = tmp_path / "runs.db"
    config_path = tmp_path / "gateflow.yaml"
    config_path.write_text(f"database_url: sqlite://{db_path}\n")

    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "run",
            WORKFLOW,
            "--steps",
            "pipeline_steps:registry",
            "--input",
            '{"prompt": "cats"}',
            "--auto-approve",
            "--config",
            str(config_path),
        ],
    )

    assert result.exit_code == 0, result.output
    runs = asyncio.run(SQLiteRunRepository(db_path).list_runs())
    assert len(runs) == 1
    assert runs[0].workflow_name == "short-video"
    assert runs[0].status == "completed"


def test_run_with_reject_stops_before_batch():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "run",
            WORKFLOW,
            "--steps",
            "pipeline_steps:registry",
            "--input",
            '{"prompt": "cats"}',
            "--reject",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Request was rejected" in result.output
    assert "rendering" not in result.output
    assert result.output.strip().endswith("rejected")


def test_run_prompts_for_approval():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(
        app,
        ["run", WORKFLOW, "--steps", "pipeline_steps:registry", "--input", '{"prompt": "cats"}'],
        input="n\n",
    )

    assert result.exit_code == 0, result.output
    assert "Step images requires approval." in result.output
    assert result.output.strip().endswith("rejected")


def test_run_sse_output_frames():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "run",
            WORKFLOW,
            "--steps",
            "pipeline_steps:registry",
            "--input",
            '{"prompt": "cats"}',
            "--auto-approve",
            "--sse",
        ],
    )

    assert result.exit_code == 0, result.output
    frames = [f for f in result.output.split("\n\n") if f.startswith("data: ")]
    payloads = [json.loads(f[len("data: ") :]) for f in frames]
    assert payloads[0]["type"] == "result"
    assert payloads[-1]["type"] == "completed"
    assert payloads[-1]["data"]["status"] == "completed"


def test_run_missing_input_field_exits_with_failure():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(
        app,
        ["run", WORKFLOW, "--steps", "pipeline_steps:registry", "--input", "{}"],
    )

    assert result.exit_code == 1
    assert "[error]" in result.output
    assert "MissingOutputFieldError" in result.output


def test_run_rejects_conflicting_flags():
    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "run",
            WORKFLOW,
            "--steps",
            "pipeline_steps:registry",
            "--auto-approve",
            "--reject",
        ],
    )
    assert result.exit_code == 2


def test_steps_command_lists_registry():
    runner = CliRunner()
    result = runner.invoke(app, ["steps", "pipeline_steps:registry"])

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert lines[0] == "research"
    assert lines[1] == "segments"
    assert lines[2] == "images\t[approval, batch over segments]"


def test_steps_command_bad_reference():
    runner = CliRunner()
    result = runner.invoke(app, ["steps", "pipeline_steps"])
    assert result.exit_code == 1


def test_runs_command_lists_runs():
    repo = _setup_repo()
    run1 = str(uuid.uuid4())
    run2 = str(uuid.uuid4())
    asyncio.run(repo.create_run(run1, "short-video", {"prompt": "cats"}))
    asyncio.run(repo.mark_run_finished(run1, "completed"))
    asyncio.run(repo.create_run(run2, "short-video", {"prompt": "dogs"}))

    runner = CliRunner()
    result = runner.invoke(app, ["runs", "list"])
    assert result.exit_code == 0, result.output
    assert run1 in result.output
    assert run2 in result.output
    assert "completed" in result.output


def test_runs_show_details_and_missing():
    repo = _setup_repo()
    run_id = str(uuid.uuid4())
    asyncio.run(repo.create_run(run_id, "short-video", {"prompt": "cats"}))
    asyncio.run(repo.record_step_output(run_id, "research", "completed", {"result": 1}))
    asyncio.run(
        repo.record_batch_item(run_id, "images", "s1", {"status": "failed", "error": "x"})
    )
    asyncio.run(repo.mark_run_finished(run_id, "failed", "Step images failed: x"))

    runner = CliRunner()
    result = runner.invoke(app, ["runs", "show", run_id])
    assert result.exit_code == 0, result.output
    assert run_id in result.output
    assert "- research: completed" in result.output
    assert "- images[s1]: failed" in result.output
    assert "Error: Step images failed: x" in result.output

    missing = runner.invoke(app, ["runs", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.output
