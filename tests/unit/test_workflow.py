import pytest
from pydantic import BaseModel

from gateflow.errors import WorkflowValidationError
from gateflow.steps import StepDefinition, StepRegistry
from gateflow.workflow import (
    RunPolicy,
    WorkflowDefinition,
    WorkflowStep,
    load_workflow,
)


class TextArgs(BaseModel):
    text: str = ""


async def echo(step_name, arguments, context):
    return {"text": arguments.text}


@pytest.fixture
def registry():
    return StepRegistry(
        [
            StepDefinition(name="research", arguments_model=TextArgs, operation=echo),
            StepDefinition(name="concepts", arguments_model=TextArgs, operation=echo),
            StepDefinition(
                name="images",
                arguments_model=TextArgs,
                operation=echo,
                needs_approval=True,
                concurrency_limit=4,
            ),
        ]
    )


def test_valid_workflow_passes(registry):
    workflow = WorkflowDefinition(
        name="video",
        steps=[
            WorkflowStep(step="research", bind={"text": "$input.prompt"}),
            WorkflowStep(step="concepts", bind={"text": "$steps.research.text"}),
        ],
    )
    workflow.validate_against(registry)
    assert workflow.step_names() == ["research", "concepts"]


@pytest.mark.parametrize(
    "steps",
    [
        [],
        [WorkflowStep(step="research"), WorkflowStep(step="research")],
        [WorkflowStep(step="publish")],
        [
            WorkflowStep(step="research", bind={"text": "$steps.concepts.text"}),
            WorkflowStep(step="concepts"),
        ],
    ],
    ids=["empty", "duplicate", "unregistered", "forward-binding"],
)
def test_invalid_workflows_rejected(registry, steps):
    workflow = WorkflowDefinition(name="broken", steps=steps)
    with pytest.raises(WorkflowValidationError):
        workflow.validate_against(registry)


def test_resolve_applies_workflow_overrides(registry):
    workflow = WorkflowDefinition(
        name="video",
        steps=[
            WorkflowStep(step="research", needs_approval=True),
            WorkflowStep(step="images", needs_approval=False, concurrency_limit=2),
        ],
    )

    research = workflow.resolve(registry, 0)
    images = workflow.resolve(registry, 1)

    assert research.needs_approval
    assert not images.needs_approval
    assert images.concurrency_limit == 2
    # Registered definitions are untouched.
    assert not registry.get("research").needs_approval
    assert registry.get("images").concurrency_limit == 4


def test_linear_builder():
    workflow = WorkflowDefinition.linear(
        "simple", "research", "concepts", rejection_outcome="error"
    )
    assert workflow.step_names() == ["research", "concepts"]
    assert workflow.policy == RunPolicy(rejection_outcome="error")


def test_load_workflow_from_yaml(tmp_path):
    path = tmp_path / "short-video.yaml"
    path.write_text(
        """
policy:
  approval_timeout: 600
  on_approval_timeout: fail
steps:
  - step: research
    bind: {text: $input.prompt}
  - step: images
    needs_approval: false
"""
    )

    workflow = load_workflow(path)

    assert workflow.name == "short-video"
    assert workflow.policy.approval_timeout == 600
    assert workflow.policy.on_approval_timeout == "fail"
    assert workflow.steps[0].bind == {"text": "$input.prompt"}
    assert workflow.steps[1].needs_approval is False


def test_load_workflow_rejects_bad_files(tmp_path):
    not_mapping = tmp_path / "list.yaml"
    not_mapping.write_text("- research\n- concepts\n")
    bad_policy = tmp_path / "policy.yaml"
    bad_policy.write_text("steps: []\npolicy:\n  rejection_outcome: maybe\n")

    with pytest.raises(WorkflowValidationError):
        load_workflow(not_mapping)
    with pytest.raises(WorkflowValidationError):
        load_workflow(bad_policy)
    with pytest.raises(WorkflowValidationError):
        load_workflow(tmp_path / "missing.yaml")
