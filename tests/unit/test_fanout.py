import asyncio

import pytest

from gateflow.contracts import EventType, SegmentTask
from gateflow.fanout import CANCELLED_ERROR, FanoutExecutor
from gateflow.steps import StepContext
from gateflow.streaming import open_stream


def _tasks(*ids):
    return [SegmentTask(item_id=i, input={"id": i}) for i in ids]


def _context():
    return StepContext(run_id="run-1", step_name="images")


@pytest.mark.asyncio
async def test_partial_failure_isolated_per_item():
    async def operation(step_name, item, context):
        if item["id"] == "s2":
            raise RuntimeError("provider unavailable")
        return {"url": f"https://cdn/{item['id']}.png"}

    sink, source = open_stream("run-1")
    batch = await FanoutExecutor().run(
        "images", _tasks("s1", "s2", "s3"), operation, _context(), sink=sink
    )
    sink.close()

    assert batch.total == 3
    assert batch.success_count == 2
    assert batch.failure_count == 1
    assert not batch.overall_success
    assert [r.item_id for r in batch.results] == ["s1", "s2", "s3"]
    assert batch.results[1].error == "provider unavailable"
    assert batch.failed_item_ids() == ["s2"]

    events = await source.collect()
    assert all(e.type is EventType.LOG for e in events)
    messages = [e.data["message"] for e in events]
    assert messages[0] == "Generating images for 3 items..."
    assert messages[1:4] == [
        "Item s1 completed successfully",
        "Item s2 failed: provider unavailable",
        "Item s3 completed successfully",
    ]
    assert messages[4] == "images completed: 2 success, 1 failed"
    assert events[4].data["success_count"] == 2


@pytest.mark.asyncio
async def test_results_keep_submission_order():
    delays = {"a": 0.03, "b": 0.01, "c": 0.0}
    finished = []

    async def operation(step_name, item, context):
        await asyncio.sleep(delays[item["id"]])
        finished.append(item["id"])
        return item["id"]

    batch = await FanoutExecutor().run(
        "images", _tasks("a", "b", "c"), operation, _context()
    )

    assert finished == ["c", "b", "a"]
    assert [r.item_id for r in batch.results] == ["a", "b", "c"]
    assert [r.data for r in batch.results] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_concurrency_limit_bounds_in_flight_items():
    in_flight = 0
    peak = 0

    async def operation(step_name, item, context):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return None

    batch = await FanoutExecutor().run(
        "images",
        _tasks("1", "2", "3", "4", "5"),
        operation,
        _context(),
        concurrency_limit=2,
    )

    assert batch.success_count == 5
    assert peak == 2


@pytest.mark.asyncio
async def test_default_concurrency_from_executor():
    in_flight = 0
    peak = 0

    async def operation(step_name, item, context):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1

    await FanoutExecutor(default_concurrency=1).run(
        "images", _tasks("1", "2", "3"), operation, _context()
    )
    assert peak == 1


@pytest.mark.asyncio
async def test_item_timeout_counts_as_failure():
    async def operation(step_name, item, context):
        if item["id"] == "slow":
            await asyncio.sleep(1)
        return "ok"

    batch = await FanoutExecutor().run(
        "videos", _tasks("fast", "slow"), operation, _context(), item_timeout=0.05
    )

    assert batch.success_count == 1
    assert batch.results[1].error.startswith("Timeout")


@pytest.mark.asyncio
async def test_all_items_failing_is_a_valid_result():
    async def operation(step_name, item, context):
        raise ValueError("bad input")

    batch = await FanoutExecutor().run(
        "images", _tasks("a", "b"), operation, _context(), is_retry=True
    )

    assert batch.success_count == 0
    assert batch.failure_count == 2
    assert batch.is_retry
    assert batch.message == "images retry completed: 0 success, 2 failed"


@pytest.mark.asyncio
async def test_stopped_batch_skips_items_not_started():
    started = []
    stop = False

    async def operation(step_name, item, context):
        nonlocal stop
        started.append(item["id"])
        stop = True
        return item["id"]

    batch = await FanoutExecutor().run(
        "images",
        _tasks("a", "b", "c"),
        operation,
        _context(),
        concurrency_limit=1,
        should_stop=lambda: stop,
    )

    assert started == ["a"]
    assert batch.results[0].ok
    assert [r.error for r in batch.results[1:]] == [CANCELLED_ERROR, CANCELLED_ERROR]


@pytest.mark.asyncio
async def test_item_hook_called_and_its_failures_ignored():
    seen = []

    async def operation(step_name, item, context):
        return context.item_id

    async def on_item(result):
        seen.append(result.item_id)
        raise RuntimeError("audit store down")

    batch = await FanoutExecutor().run(
        "images", _tasks("a", "b"), operation, _context(), on_item=on_item
    )

    assert sorted(seen) == ["a", "b"]
    assert batch.success_count == 2
    assert [r.data for r in batch.results] == ["a", "b"]


@pytest.mark.asyncio
async def test_operation_timeout_error_without_item_timeout_is_item_failure():
    async def operation(step_name, item, context):
        if item["id"] == "b":
            raise TimeoutError("upstream provider timed out")
        return item["id"]

    batch = await FanoutExecutor().run(
        "images", _tasks("a", "b", "c"), operation, _context()
    )

    assert (batch.total, batch.success_count, batch.failure_count) == (3, 2, 1)
    assert batch.results[1].error == "upstream provider timed out"
    assert [r.data for r in batch.results if r.ok] == ["a", "c"]
