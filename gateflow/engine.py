"""Engine facade: the surface an API layer drives runs and approvals through."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from .approvals import ApprovalGate
from .config import GateflowConfig
from .contracts import ApprovalRequest, AuthContext, BatchResult, RunState
from .controller import RunController, RunHandle
from .errors import WorkflowValidationError
from .fanout import FanoutExecutor
from .persistence import RunRepository
from .steps import StepRegistry
from .streaming import open_stream
from .workflow import RunPolicy, WorkflowDefinition

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Owns the approval gate and the live runs of one process.

    Several engines can coexist (one per test, for instance); nothing here
    is module-global.

    A run stays reachable through :meth:`get_run` while it executes or its
    stream still has unread events. Once the run has finished and its
    subscriber has drained or closed the stream, the engine forgets it.
    """

    def __init__(
        self,
        registry: StepRegistry,
        gate: Optional[ApprovalGate] = None,
        fanout: Optional[FanoutExecutor] = None,
        repository: Optional[RunRepository] = None,
        config: Optional[GateflowConfig] = None,
    ) -> None:
        self.registry = registry
        self.config = config or GateflowConfig()
        self.gate = gate or ApprovalGate()
        self.fanout = fanout or FanoutExecutor(self.config.engine.default_concurrency)
        self.repository = repository
        self._runs: Dict[str, RunHandle] = {}
        self._background: Set[asyncio.Task] = set()

    def _policy_for(self, workflow: WorkflowDefinition) -> RunPolicy:
        """Combine engine defaults with the fields the workflow sets itself."""
        defaults = self.config.engine
        policy = RunPolicy(
            approval_timeout=defaults.approval_timeout,
            on_approval_timeout=defaults.on_approval_timeout,
            rejection_outcome=defaults.rejection_outcome,
        )
        explicit = {
            name: getattr(workflow.policy, name)
            for name in workflow.policy.model_fields_set
        }
        return policy.model_copy(update=explicit)

    async def start_run(
        self,
        workflow: WorkflowDefinition,
        run_input: Any = None,
        auth_context: Optional[AuthContext] = None,
        seed_outputs: Optional[Dict[str, Any]] = None,
        retry_items: Optional[Dict[str, List[str]]] = None,
        run_id: Optional[str] = None,
    ) -> RunHandle:
        """Validate ``workflow`` and start executing it in a new task.

        Raises:
            WorkflowValidationError: If the workflow is malformed; no run is
                started in that case.
        """
        workflow.validate_against(self.registry)
        for name in seed_outputs or {}:
            if name not in workflow.step_names():
                raise WorkflowValidationError(
                    f"Seed output for {name}, which is not a step of {workflow.name}"
                )

        run_id = run_id or str(uuid.uuid4())
        if run_id in self._runs:
            raise WorkflowValidationError(f"Run {run_id} already exists")

        state = RunState(
            run_id=run_id,
            workflow_name=workflow.name,
            step_outputs=dict(seed_outputs or {}),
        )
        sink, source = open_stream(run_id)
        controller = RunController(
            state=state,
            workflow=workflow,
            registry=self.registry,
            gate=self.gate,
            sink=sink,
            run_input=run_input,
            auth=auth_context,
            fanout=self.fanout,
            repository=self.repository,
            policy=self._policy_for(workflow),
            retry_items=retry_items,
            background=self._background,
        )
        task = asyncio.create_task(controller.run(), name=f"gateflow-run-{run_id}")
        handle = RunHandle(state, source, task, controller)
        self._runs[run_id] = handle
        task.add_done_callback(lambda _: self._release_settled(run_id))
        source.on_exhausted(lambda: self._release_settled(run_id))
        logger.info(f"Started run_id={run_id} workflow={workflow.name}")
        return handle

    async def retry_failed_items(
        self,
        prior: RunState,
        workflow: WorkflowDefinition,
        step_name: str,
        run_input: Any = None,
        auth_context: Optional[AuthContext] = None,
    ) -> RunHandle:
        """Start a run that re-submits only the failed items of ``step_name``.

        Outputs of the steps before ``step_name`` are carried over from
        ``prior`` so they are not executed again.
        """
        output = prior.step_outputs.get(step_name)
        if not isinstance(output, BatchResult):
            raise WorkflowValidationError(
                f"Run {prior.run_id} has no batch result for step {step_name}"
            )
        failed = output.failed_item_ids()
        if not failed:
            raise WorkflowValidationError(
                f"Step {step_name} of run {prior.run_id} has no failed items"
            )

        names = workflow.step_names()
        if step_name not in names:
            raise WorkflowValidationError(
                f"Step {step_name} is not part of workflow {workflow.name}"
            )
        earlier = names[: names.index(step_name)]
        seed = {
            name: prior.step_outputs[name]
            for name in earlier
            if name in prior.step_outputs
        }
        logger.info(
            f"Retrying {len(failed)} failed items of step={step_name} "
            f"from run_id={prior.run_id}"
        )
        return await self.start_run(
            workflow,
            run_input,
            auth_context=auth_context,
            seed_outputs=seed,
            retry_items={step_name: failed},
        )

    async def decide(
        self,
        approval_id: str,
        approved: bool,
        extra_arguments: Optional[Dict[str, Any]] = None,
    ) -> ApprovalRequest:
        """Apply a human decision; see :meth:`ApprovalGate.decide`.

        Approved overrides are checked against the step's arguments model
        first.

        Raises:
            StepArgumentsError: If the merged arguments are invalid. The
                request stays pending and can be decided again.
        """
        return await self.gate.decide(
            approval_id, approved, extra_arguments, validate=self._check_arguments
        )

    def _check_arguments(
        self, request: ApprovalRequest, arguments: Dict[str, Any]
    ) -> None:
        self.registry.get(request.step_name).decode_arguments(arguments)

    def list_pending_approvals(self) -> List[ApprovalRequest]:
        return self.gate.list_pending()

    def get_approval_request(self, approval_id: str) -> Optional[ApprovalRequest]:
        return self.gate.get(approval_id)

    def sweep_stale(self, max_age: Optional[timedelta] = None) -> int:
        """Drop decided approval requests older than ``max_age``."""
        if max_age is None:
            max_age = timedelta(hours=self.config.engine.sweep_max_age_hours)
        return self.gate.sweep(max_age)

    def get_run(self, run_id: str) -> Optional[RunHandle]:
        return self._runs.get(run_id)

    def list_runs(self) -> List[RunHandle]:
        return list(self._runs.values())

    def release(self, run_id: str) -> bool:
        """Forget a finished run whose stream is still unread. Live runs are kept."""
        handle = self._runs.get(run_id)
        if handle is None or not handle.done:
            return False
        del self._runs[run_id]
        return True

    def _release_settled(self, run_id: str) -> None:
        handle = self._runs.get(run_id)
        if handle is not None and handle.done and handle.events.exhausted:
            del self._runs[run_id]
            logger.debug(f"Released finished run_id={run_id}")

    async def shutdown(self) -> None:
        """Cancel every live run and wait for them to settle.

        Work detached from cancelled runs is awaited too, so no provider
        call is left running once this returns.
        """
        handles = [h for h in self._runs.values() if not h.done]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*(h.wait() for h in handles), return_exceptions=True)
        if self._background:
            logger.info(
                f"Waiting for {len(self._background)} detached operations to settle"
            )
            await asyncio.gather(*list(self._background), return_exceptions=True)
