"""Concurrent fan-out of one operation over many independent items."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from .contracts import BatchResult, SegmentResult, SegmentStatus, SegmentTask, jsonable
from .steps import Operation, StepContext
from .streaming import EventSink

logger = logging.getLogger(__name__)

ItemCallback = Callable[[SegmentResult], Awaitable[None]]

CANCELLED_ERROR = "cancelled: run stopped before the item started"


class _ItemTimeout(Exception):
    def __init__(self, seconds: float) -> None:
        super().__init__(f"Timeout: item did not settle within {seconds:g}s")


class FanoutExecutor:
    """Run an item operation over a batch with per-item failure isolation.

    Every task is wrapped so that an exception becomes a failed
    :class:`SegmentResult`; the fan-in barrier therefore behaves like an
    "all settled" join and never aborts on the first failure.
    """

    def __init__(self, default_concurrency: Optional[int] = None) -> None:
        self.default_concurrency = default_concurrency

    async def run(
        self,
        step_name: str,
        tasks: Sequence[SegmentTask],
        operation: Operation,
        context: StepContext,
        sink: Optional[EventSink] = None,
        concurrency_limit: Optional[int] = None,
        item_timeout: Optional[float] = None,
        is_retry: bool = False,
        on_item: Optional[ItemCallback] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> BatchResult:
        """Execute ``operation`` for every task and aggregate the outcomes.

        Args:
            step_name: Step the batch belongs to, passed to the operation.
            tasks: Items in submission order.
            operation: Async callable ``(step_name, item_input, context)``.
            context: Base step context; each item gets a copy with its id.
            sink: Stream receiving per-item and summary ``log`` events.
            concurrency_limit: Maximum simultaneous in-flight operations.
                ``None`` falls back to the executor default (unbounded when
                that is also ``None``).
            item_timeout: Seconds after which one item counts as failed.
            is_retry: Marks the batch as a re-submission of failed items.
            on_item: Awaited after each item settles (audit hook). Its
                failures are logged and never affect the batch.
            should_stop: Checked before each item starts; items not yet
                started when it returns ``True`` are skipped as failed.
                Defaults to the sink's ``cancelled`` flag.

        Returns:
            BatchResult with results in submission order.
        """
        limit = concurrency_limit or self.default_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None
        total = len(tasks)
        if should_stop is None:

            def should_stop() -> bool:
                return sink is not None and sink.cancelled

        self._emit(
            sink,
            (
                f"Retrying {step_name} for {total} items..."
                if is_retry
                else f"Generating {step_name} for {total} items..."
            ),
            step=step_name,
            total=total,
        )
        logger.info(
            f"Fan-out start step={step_name} run_id={context.run_id} "
            f"items={total} limit={limit}"
        )

        async def _run_one(index: int, task: SegmentTask) -> tuple[int, SegmentResult]:
            if semaphore is not None:
                async with semaphore:
                    result = await self._settle(
                        step_name, task, operation, context, should_stop, item_timeout
                    )
            else:
                result = await self._settle(
                    step_name, task, operation, context, should_stop, item_timeout
                )
            self._report(step_name, result, sink)
            if on_item is not None:
                try:
                    await on_item(result)
                except Exception as exc:
                    logger.warning(
                        f"Item audit hook failed for step={step_name} "
                        f"item={result.item_id}: {exc}"
                    )
            return index, result

        settled = await asyncio.gather(
            *(_run_one(index, task) for index, task in enumerate(tasks))
        )
        ordered: List[SegmentResult] = [
            result for _, result in sorted(settled, key=lambda pair: pair[0])
        ]

        batch = BatchResult.from_results(step_name, ordered, is_retry=is_retry)
        self._emit(
            sink,
            batch.message,
            step=step_name,
            total=batch.total,
            success_count=batch.success_count,
            failure_count=batch.failure_count,
        )
        logger.info(f"Fan-out done run_id={context.run_id}: {batch.message}")
        return batch

    async def _settle(
        self,
        step_name: str,
        task: SegmentTask,
        operation: Operation,
        context: StepContext,
        should_stop: Callable[[], bool],
        item_timeout: Optional[float],
    ) -> SegmentResult:
        if should_stop():
            return SegmentResult(
                item_id=task.item_id,
                status=SegmentStatus.FAILED,
                error=CANCELLED_ERROR,
            )

        item_context = context.for_item(task.item_id)
        try:
            call = operation(step_name, task.input, item_context)
            if item_timeout is None:
                data = await call
            else:
                try:
                    data = await asyncio.wait_for(call, timeout=item_timeout)
                except asyncio.TimeoutError as exc:
                    raise _ItemTimeout(item_timeout) from exc
        except _ItemTimeout as timeout:
            return SegmentResult(
                item_id=task.item_id,
                status=SegmentStatus.FAILED,
                error=str(timeout),
            )
        except Exception as exc:
            logger.error(f"Item {task.item_id} of step={step_name} failed: {exc}")
            return SegmentResult(
                item_id=task.item_id,
                status=SegmentStatus.FAILED,
                error=str(exc) or type(exc).__name__,
            )
        return SegmentResult(
            item_id=task.item_id, status=SegmentStatus.SUCCESS, data=data
        )

    def _report(
        self, step_name: str, result: SegmentResult, sink: Optional[EventSink]
    ) -> None:
        if result.ok:
            self._emit(
                sink,
                f"Item {result.item_id} completed successfully",
                step=step_name,
                item_id=result.item_id,
                status=result.status.value,
                data=jsonable(result.data),
            )
        else:
            self._emit(
                sink,
                f"Item {result.item_id} failed: {result.error}",
                step=step_name,
                item_id=result.item_id,
                status=result.status.value,
                error=result.error,
            )

    @staticmethod
    def _emit(sink: Optional[EventSink], message: str, **data: Any) -> None:
        if sink is None or sink.terminated or sink.cancelled:
            return
        sink.log(message, **data)

