import uuid

import pytest

from gateflow.persistence import InMemoryRunRepository, SQLiteRunRepository


@pytest.mark.asyncio
async def test_sqlite_repository_crud(tmp_path):
    db_path = tmp_path / "runs.db"
    repo = SQLiteRunRepository(db_path)

    run_id = str(uuid.uuid4())
    await repo.create_run(run_id, "short-video", {"prompt": "cats"})
    await repo.record_step_output(run_id, "research", "completed", {"result": {"x": 1}})
    await repo.record_batch_item(
        run_id, "images", "s1", {"item_id": "s1", "status": "success", "data": "url"}
    )
    await repo.record_batch_item(
        run_id, "images", "s2", {"item_id": "s2", "status": "failed", "error": "boom"}
    )
    await repo.mark_run_finished(run_id, "completed")

    run = await repo.get_run(run_id)
    assert run is not None
    assert run.run_id == run_id
    assert run.workflow_name == "short-video"
    assert run.input == {"prompt": "cats"}
    assert run.status == "completed"
    assert [(s.step_name, s.item_id, s.status) for s in run.steps] == [
        ("research", None, "completed"),
        ("images", "s1", "success"),
        ("images", "s2", "failed"),
    ]
    assert run.steps[0].output == {"result": {"x": 1}}
    assert run.steps[0].recorded_at is not None

    all_runs = await repo.list_runs()
    assert any(r.run_id == run_id for r in all_runs)


@pytest.mark.asyncio
async def test_sqlite_repository_records_failure(tmp_path):
    repo = SQLiteRunRepository(tmp_path / "runs.db")
    run_id = str(uuid.uuid4())
    await repo.create_run(run_id, "short-video")
    await repo.mark_run_finished(run_id, "failed", "Step images failed: boom")

    run = await repo.get_run(run_id)
    assert run.status == "failed"
    assert run.error == "Step images failed: boom"
    assert await repo.get_run("missing") is None


@pytest.mark.asyncio
async def test_inmemory_repository_ignores_unknown_runs():
    repo = InMemoryRunRepository()
    await repo.record_step_output("missing", "research", "completed")

    run_id = str(uuid.uuid4())
    await repo.create_run(run_id, "short-video", {"prompt": "cats"})
    await repo.record_step_output(run_id, "research", "completed", {"result": 1})
    await repo.mark_run_finished(run_id, "rejected")

    run = await repo.get_run(run_id)
    assert run.status == "rejected"
    assert len(run.steps) == 1
    assert run.steps[0].id == 1
    assert await repo.get_run("missing") is None
