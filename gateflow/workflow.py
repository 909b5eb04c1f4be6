"""Workflow definitions: ordered steps, bindings and run policy."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import WorkflowValidationError
from .steps import StepDefinition, StepRegistry, referenced_steps


class RunPolicy(BaseModel):
    """Per-workflow knobs for approval waits and rejection reporting."""

    approval_timeout: Optional[float] = Field(
        default=None, description="Seconds to wait for a decision before acting"
    )
    on_approval_timeout: Literal["wait", "fail"] = "wait"
    rejection_outcome: Literal["completed", "error"] = "completed"


class WorkflowStep(BaseModel):
    """One step of a workflow, pointing at a registered step definition."""

    step: str
    bind: Dict[str, Any] = Field(default_factory=dict)
    needs_approval: Optional[bool] = None
    all_or_nothing: Optional[bool] = None
    concurrency_limit: Optional[int] = None
    item_timeout: Optional[float] = None


class WorkflowDefinition(BaseModel):
    """Ordered steps executed by one run."""

    name: str
    description: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    policy: RunPolicy = Field(default_factory=RunPolicy)

    def step_names(self) -> List[str]:
        return [s.step for s in self.steps]

    def validate_against(self, registry: StepRegistry) -> None:
        """Check the definition before any run starts.

        Raises:
            WorkflowValidationError: On an empty workflow, duplicate or
                unregistered steps, or bindings that reference a step not
                executed earlier in the workflow.
        """
        if not self.steps:
            raise WorkflowValidationError(f"Workflow {self.name} has no steps")

        seen: List[str] = []
        for index, wf_step in enumerate(self.steps):
            if wf_step.step in seen:
                raise WorkflowValidationError(
                    f"Workflow {self.name} lists step {wf_step.step} twice"
                )
            if wf_step.step not in registry:
                raise WorkflowValidationError(
                    f"Workflow {self.name} step {index} ({wf_step.step}) is not registered"
                )
            for ref in referenced_steps(wf_step.bind):
                if ref not in seen:
                    raise WorkflowValidationError(
                        f"Step {wf_step.step} binds to {ref}, which does not run before it"
                    )
            seen.append(wf_step.step)

    def resolve(self, registry: StepRegistry, index: int) -> StepDefinition:
        """Return the step definition at ``index`` with workflow overrides applied."""
        wf_step = self.steps[index]
        definition = registry.get(wf_step.step)
        overrides = {
            key: value
            for key, value in (
                ("needs_approval", wf_step.needs_approval),
                ("all_or_nothing", wf_step.all_or_nothing),
                ("concurrency_limit", wf_step.concurrency_limit),
                ("item_timeout", wf_step.item_timeout),
            )
            if value is not None
        }
        if not overrides:
            return definition
        return definition.model_copy(update=overrides)

    @classmethod
    def linear(cls, name: str, *step_names: str, **policy: Any) -> "WorkflowDefinition":
        """Build a workflow whose steps each consume the run input."""
        return cls(
            name=name,
            steps=[WorkflowStep(step=s) for s in step_names],
            policy=RunPolicy(**policy),
        )


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Load a workflow definition from a YAML file.

    Example file::

        name: short-video
        policy:
          approval_timeout: 600
        steps:
          - step: research
            bind: {prompt: $input.prompt}
          - step: concepts
            bind: {prompt: $input.prompt, web_info: $steps.research.summary}
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise WorkflowValidationError(f"Cannot read workflow file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise WorkflowValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise WorkflowValidationError(f"Workflow file {path} must contain a mapping")
    data.setdefault("name", path.stem)
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        raise WorkflowValidationError(f"Invalid workflow {path}: {exc}") from exc
