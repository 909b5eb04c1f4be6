"""Per-run event stream delivering ordered progress events to one subscriber."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from .contracts import EventType, StreamEvent
from .errors import StreamClosedError

logger = logging.getLogger(__name__)

_CLOSED = object()


class _StreamState:
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False
        self.terminated = False
        self.cancelled = False
        self.cancel_callbacks: List[Callable[[], None]] = []


class EventSink:
    """Write side of a run stream, owned by the run controller.

    Publishing never blocks: events buffer in an unbounded queue until the
    subscriber drains them. Use as an async context manager to guarantee
    the stream is closed on every exit path.
    """

    def __init__(self, state: _StreamState) -> None:
        self._state = state

    @property
    def run_id(self) -> str:
        return self._state.run_id

    @property
    def cancelled(self) -> bool:
        """``True`` once the subscriber has disconnected."""
        return self._state.cancelled

    @property
    def terminated(self) -> bool:
        return self._state.terminated or self._state.closed

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` when the subscriber disconnects."""
        if self._state.cancelled:
            callback()
        else:
            self._state.cancel_callbacks.append(callback)

    def publish(
        self, event_type: EventType | str, data: Optional[Dict[str, Any]] = None
    ) -> StreamEvent:
        """Append an event to the stream.

        Raises:
            StreamClosedError: If a terminal event was already published or
                the stream has been closed.
        """
        if self.terminated:
            raise StreamClosedError(
                f"Stream for run {self.run_id} is closed; cannot publish {event_type}"
            )
        event = StreamEvent(type=EventType(event_type), data=data or {})
        if event.is_terminal:
            self._state.terminated = True
        if self._state.cancelled:
            logger.debug(
                f"Dropping {event.type.value} event for run_id={self.run_id}: subscriber gone"
            )
            return event
        self._state.queue.put_nowait(event)
        return event

    def log(self, message: str, **extra: Any) -> StreamEvent:
        return self.publish(EventType.LOG, {"message": message, **extra})

    def close(self) -> None:
        """Close the stream. Safe to call more than once."""
        if self._state.closed:
            return
        self._state.closed = True
        self._state.queue.put_nowait(_CLOSED)
        logger.debug(f"Stream closed for run_id={self.run_id}")

    async def __aenter__(self) -> "EventSink":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class EventSource:
    """Read side of a run stream: an async iterator of :class:`StreamEvent`."""

    def __init__(self, state: _StreamState) -> None:
        self._state = state
        self._exhausted = False
        self._exhausted_callbacks: List[Callable[[], None]] = []

    @property
    def run_id(self) -> str:
        return self._state.run_id

    @property
    def exhausted(self) -> bool:
        """``True`` once the stream has been read to its end or disconnected."""
        return self._exhausted

    def on_exhausted(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` once the subscriber is done with the stream."""
        if self._exhausted:
            callback()
        else:
            self._exhausted_callbacks.append(callback)

    def _mark_exhausted(self) -> None:
        if self._exhausted:
            return
        self._exhausted = True
        callbacks, self._exhausted_callbacks = self._exhausted_callbacks, []
        for callback in callbacks:
            callback()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._state.queue.get()
        if item is _CLOSED:
            self._mark_exhausted()
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        """Disconnect the subscriber; the producer observes ``cancelled``."""
        self._mark_exhausted()
        if self._state.closed or self._state.cancelled:
            return
        self._state.cancelled = True
        logger.info(f"Subscriber disconnected from run_id={self.run_id}")
        callbacks, self._state.cancel_callbacks = self._state.cancel_callbacks, []
        for callback in callbacks:
            callback()

    async def collect(self) -> List[StreamEvent]:
        """Drain the stream until it closes."""
        return [event async for event in self]


def open_stream(run_id: str) -> Tuple[EventSink, EventSource]:
    """Create the sink/source pair for one run."""
    state = _StreamState(run_id)
    return EventSink(state), EventSource(state)


def encode_sse(event: StreamEvent) -> str:
    """Frame ``event`` as a server-sent-event ``data:`` record."""
    return f"data: {json.dumps(event.to_wire(), ensure_ascii=False)}\n\n"
