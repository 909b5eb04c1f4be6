import json

import pytest

from gateflow.contracts import AuthContext, EventType
from gateflow.errors import StreamClosedError
from gateflow.streaming import encode_sse, open_stream


@pytest.mark.asyncio
async def test_events_delivered_in_publish_order():
    sink, source = open_stream("run-1")
    sink.log("first")
    sink.publish(EventType.RESULT, {"step": "a"})
    sink.publish(EventType.COMPLETED, {"status": "completed"})
    sink.close()

    events = await source.collect()
    assert [e.type for e in events] == [
        EventType.LOG,
        EventType.RESULT,
        EventType.COMPLETED,
    ]
    assert events[0].data == {"message": "first"}


@pytest.mark.asyncio
async def test_publish_after_terminal_event_rejected():
    sink, _ = open_stream("run-1")
    sink.publish(EventType.ERROR, {"message": "boom"})

    assert sink.terminated
    with pytest.raises(StreamClosedError):
        sink.log("too late")


@pytest.mark.asyncio
async def test_close_is_idempotent_and_context_manager_closes():
    sink, source = open_stream("run-1")
    async with sink:
        sink.log("inside")
    sink.close()

    events = await source.collect()
    assert len(events) == 1
    with pytest.raises(StreamClosedError):
        sink.log("after close")


@pytest.mark.asyncio
async def test_subscriber_disconnect_marks_cancelled():
    sink, source = open_stream("run-1")
    calls = []
    sink.on_cancel(lambda: calls.append("cancelled"))

    await source.aclose()

    assert sink.cancelled
    assert calls == ["cancelled"]
    # Producer keeps going; events are dropped.
    sink.log("nobody listening")
    sink.close()

    late = []
    sink.on_cancel(lambda: late.append(True))
    assert late == [True]


def test_encode_sse_framing():
    sink, _ = open_stream("run-1")
    event = sink.publish(EventType.RESULT, {"step": "research", "output": {"x": 1}})

    frame = encode_sse(event)
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    body = json.loads(frame[len("data: ") : -2])
    assert body["type"] == "result"
    assert body["data"] == {"step": "research", "output": {"x": 1}}
    assert "timestamp" in body


def test_auth_context_strips_bearer_prefix():
    assert AuthContext.from_header("Bearer abc123").token == "abc123"
    assert AuthContext.from_header("abc123").token == "abc123"
    assert AuthContext.from_header(None).token is None
