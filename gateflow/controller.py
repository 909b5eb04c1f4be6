"""Run controller: drives one run through the ordered steps of a workflow."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Set, TypeVar

from pydantic import BaseModel

from .approvals import ApprovalGate
from .constants import APPROVAL_WAIT_LOG_MESSAGE
from .contracts import (
    AuthContext,
    BatchResult,
    Decision,
    EventType,
    RunState,
    RunStatus,
    SegmentResult,
    jsonable,
)
from .errors import ApprovalTimeoutError, GateflowError, StepExecutionError
from .fanout import FanoutExecutor
from .persistence import RunRepository
from .steps import StepContext, StepDefinition, StepRegistry, resolve_bindings
from .streaming import EventSink, EventSource
from .workflow import RunPolicy, WorkflowDefinition

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _RunAborted(Exception):
    """Cancellation was requested; unwinds the step loop."""


class _StepRejected(Exception):
    def __init__(self, step_name: str, approval_id: str) -> None:
        super().__init__(step_name)
        self.step_name = step_name
        self.approval_id = approval_id


class RunHandle:
    """Caller-facing handle of a started run."""

    def __init__(
        self,
        state: RunState,
        events: EventSource,
        task: "asyncio.Task[RunState]",
        controller: "RunController",
    ) -> None:
        self.state = state
        self.events = events
        self._task = task
        self._controller = controller

    @property
    def run_id(self) -> str:
        return self.state.run_id

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        """Request cooperative cancellation of the run."""
        self._controller.request_stop()

    async def wait(self) -> RunState:
        """Wait for the run to reach a terminal state."""
        return await asyncio.shield(self._task)


class RunController:
    """State machine for one run.

    Steps run strictly in order. A gated step registers an approval and
    suspends until the gate resolves it; batch steps fan out through the
    :class:`FanoutExecutor`. The stream always ends with exactly one
    terminal event and is closed on every exit path.
    """

    def __init__(
        self,
        *,
        state: RunState,
        workflow: WorkflowDefinition,
        registry: StepRegistry,
        gate: ApprovalGate,
        sink: EventSink,
        run_input: Any = None,
        auth: Optional[AuthContext] = None,
        fanout: Optional[FanoutExecutor] = None,
        repository: Optional[RunRepository] = None,
        policy: Optional[RunPolicy] = None,
        retry_items: Optional[Dict[str, List[str]]] = None,
        background: Optional[Set[asyncio.Task]] = None,
    ) -> None:
        self.state = state
        self.workflow = workflow
        self.registry = registry
        self.gate = gate
        self.sink = sink
        self.run_input = run_input
        self.auth = auth or AuthContext()
        self.fanout = fanout or FanoutExecutor()
        self.repository = repository
        self.policy = policy or workflow.policy
        self.retry_items = retry_items or {}
        self._stop = asyncio.Event()
        self._background: Set[asyncio.Task] = (
            background if background is not None else set()
        )
        sink.on_cancel(self.request_stop)

    # ------------------------------------------------------------------
    # Cancellation
    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info(f"Cancellation requested for run_id={self.state.run_id}")
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def _check_stop(self) -> None:
        if self._stop.is_set():
            raise _RunAborted()

    async def _until_stopped(self, awaitable: Awaitable[T], detach: bool = True) -> T:
        """Await ``awaitable`` unless cancellation arrives first.

        With ``detach`` the underlying work keeps running in the background
        on cancellation so in-flight external calls settle; its result is
        discarded. Otherwise the work is cancelled.
        """
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            if not stop.done():
                stop.cancel()
        if work.done():
            return work.result()

        if detach:
            self._background.add(work)
            work.add_done_callback(self._forget_background)
        else:
            work.cancel()
        raise _RunAborted()

    def _forget_background(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.info(
                f"Background work for aborted run_id={self.state.run_id} "
                f"ended with: {task.exception()}"
            )

    # ------------------------------------------------------------------
    # Audit
    async def _audit(self, method: str, *args: Any) -> None:
        if self.repository is None:
            return
        try:
            await getattr(self.repository, method)(*args)
        except Exception as exc:
            logger.warning(
                f"Audit call {method} failed for run_id={self.state.run_id}: {exc}"
            )

    # ------------------------------------------------------------------
    # Run loop
    async def run(self) -> RunState:
        run_id = self.state.run_id
        logger.info(f"Run start run_id={run_id} workflow={self.workflow.name}")
        run_input = jsonable(self.run_input)
        if not isinstance(run_input, dict):
            run_input = {"input": run_input}
        await self._audit("create_run", run_id, self.workflow.name, run_input)

        async with self.sink:
            try:
                await self._drive()
            except _RunAborted:
                self._finish_aborted()
            except _StepRejected as rejected:
                self._finish_rejected(rejected.step_name)
            except asyncio.CancelledError:
                self._finish_aborted()
                raise
            except Exception as exc:
                self._finish_failed(exc)
            else:
                self._finish_completed()
            finally:
                # A request still pending here can no longer be consumed.
                if self.state.approval_id is not None:
                    self.gate.discard(self.state.approval_id)
                    self.state.approval_id = None

        await self._audit(
            "mark_run_finished", run_id, self.state.status.value, self.state.error
        )
        logger.info(f"Run end run_id={run_id} status={self.state.status.value}")
        return self.state

    async def _drive(self) -> None:
        for index, wf_step in enumerate(self.workflow.steps):
            self._check_stop()
            self.state.current_step = index
            definition = self.workflow.resolve(self.registry, index)
            name = definition.name

            if name in self.state.step_outputs:
                logger.info(
                    f"Skipping step {name} for run_id={self.state.run_id}: output already recorded"
                )
                self.sink.log(f"Skipping {name}: output already recorded", step=name)
                continue

            raw = resolve_bindings(wf_step.bind, self.run_input, self.state.step_outputs)
            arguments = definition.decode_arguments(raw)

            if definition.needs_approval:
                arguments = await self._await_approval(definition, arguments)

            output = await self._execute(definition, arguments)
            self._check_stop()

            self.state.record_output(name, output)
            await self._audit(
                "record_step_output",
                self.state.run_id,
                name,
                "completed",
                {"result": jsonable(output)},
            )
            self.sink.publish(EventType.RESULT, {"step": name, "output": jsonable(output)})
            logger.info(f"Step {name} completed for run_id={self.state.run_id}")

        self.state.current_step = len(self.workflow.steps)

    # ------------------------------------------------------------------
    # Approval
    async def _await_approval(
        self, definition: StepDefinition, arguments: BaseModel
    ) -> BaseModel:
        name = definition.name
        payload = arguments.model_dump(mode="json")
        approval_id = await self.gate.register(
            self.state.run_id, name, payload, self.auth
        )
        self.state.approval_id = approval_id
        self.state.transition(RunStatus.AWAITING_APPROVAL)

        data: Dict[str, Any] = {
            "approval_id": approval_id,
            "step": name,
            "arguments": payload,
        }
        if definition.description:
            data["description"] = definition.description
        if name in self.retry_items:
            data["retry_item_ids"] = list(self.retry_items[name])
        self.sink.publish(EventType.APPROVAL_REQUIRED, data)

        # Decided requests stay in the gate until swept so that a late
        # duplicate decision is answered with ApprovalAlreadyDecidedError.
        decision = await self._wait_for_decision(approval_id, name)
        self.state.approval_id = None

        if not decision.approved:
            raise _StepRejected(name, approval_id)

        self.state.transition(RunStatus.RUNNING)
        logger.info(
            f"Approval received, continuing execution... run_id={self.state.run_id} "
            f"approval_id={approval_id}"
        )
        return definition.decode_arguments(decision.arguments)

    async def _wait_for_decision(self, approval_id: str, step_name: str) -> Decision:
        timeout = self.policy.approval_timeout
        while True:
            try:
                return await self._until_stopped(
                    self.gate.await_decision(approval_id, timeout=timeout),
                    detach=False,
                )
            except ApprovalTimeoutError:
                if self.policy.on_approval_timeout == "fail":
                    raise
                logger.info(
                    f"Approval approval_id={approval_id} still pending after {timeout}s"
                )
                self.sink.log(
                    APPROVAL_WAIT_LOG_MESSAGE, step=step_name, approval_id=approval_id
                )

    # ------------------------------------------------------------------
    # Execution
    async def _execute(self, definition: StepDefinition, arguments: BaseModel) -> Any:
        name = definition.name
        context = StepContext(
            run_id=self.state.run_id, step_name=name, auth=self.auth, sink=self.sink
        )
        if definition.is_batch:
            return await self._execute_batch(definition, arguments, context)

        try:
            return await self._until_stopped(
                definition.operation(name, arguments, context)
            )
        except (_RunAborted, GateflowError):
            raise
        except Exception as exc:
            logger.error(f"Step {name} failed for run_id={self.state.run_id}: {exc}")
            raise StepExecutionError(name, str(exc) or type(exc).__name__) from exc

    async def _execute_batch(
        self, definition: StepDefinition, arguments: BaseModel, context: StepContext
    ) -> BatchResult:
        name = definition.name
        retry_ids = self.retry_items.get(name)
        tasks = definition.build_tasks(arguments, retry_ids)

        async def audit_item(result: SegmentResult) -> None:
            if self.stop_requested:
                return
            await self._audit(
                "record_batch_item",
                self.state.run_id,
                name,
                result.item_id,
                result.model_dump(mode="json"),
            )

        batch = await self._until_stopped(
            self.fanout.run(
                name,
                tasks,
                definition.operation,
                context,
                sink=self.sink,
                concurrency_limit=definition.concurrency_limit,
                item_timeout=definition.item_timeout,
                is_retry=bool(retry_ids),
                on_item=audit_item,
                should_stop=lambda: self.stop_requested,
            )
        )
        if definition.all_or_nothing and batch.failure_count:
            raise StepExecutionError(
                name, f"{batch.failure_count} of {batch.total} items failed"
            )
        return batch

    # ------------------------------------------------------------------
    # Terminal transitions
    def _finish_completed(self) -> None:
        self.state.transition(RunStatus.COMPLETED)
        final_output = None
        if self.state.step_outputs:
            final_output = jsonable(list(self.state.step_outputs.values())[-1])
        self.sink.publish(
            EventType.COMPLETED,
            {
                "status": RunStatus.COMPLETED.value,
                "final_output": final_output,
                "message": "Run completed successfully",
            },
        )

    def _finish_rejected(self, step_name: str) -> None:
        self.state.transition(RunStatus.REJECTED)
        logger.info(f"Step {step_name} rejected for run_id={self.state.run_id}")
        self.sink.log(
            "Request was rejected", step=step_name, status=RunStatus.REJECTED.value
        )
        if self.policy.rejection_outcome == "error":
            self.sink.publish(
                EventType.ERROR,
                {
                    "step": step_name,
                    "message": f"Step {step_name} was rejected",
                    "kind": "rejected",
                },
            )
        else:
            self.sink.publish(
                EventType.COMPLETED,
                {
                    "status": RunStatus.REJECTED.value,
                    "step": step_name,
                    "message": f"Run stopped: step {step_name} was rejected",
                },
            )

    def _finish_failed(self, exc: BaseException) -> None:
        if self.state.is_finished:
            logger.error(f"Error after run_id={self.state.run_id} finished: {exc}")
            return
        step_name = getattr(exc, "step_name", None) or self._current_step_name()
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        self.state.error = message
        self.state.transition(RunStatus.FAILED)
        logger.error(
            f"Run failed run_id={self.state.run_id} step={step_name}: {message}"
        )
        if not self.sink.terminated:
            self.sink.publish(
                EventType.ERROR,
                {"step": step_name, "message": message, "kind": type(exc).__name__},
            )

    def _finish_aborted(self) -> None:
        if self.state.is_finished:
            return
        self.state.transition(RunStatus.ABORTED)
        if not self.sink.terminated:
            self.sink.publish(
                EventType.COMPLETED,
                {
                    "status": RunStatus.ABORTED.value,
                    "step": self._current_step_name(),
                    "message": "Run cancelled",
                },
            )

    def _current_step_name(self) -> Optional[str]:
        index = self.state.current_step
        if 0 <= index < len(self.workflow.steps):
            return self.workflow.steps[index].step
        return None
