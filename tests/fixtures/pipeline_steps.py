"""Step registry used by the CLI tests."""

from typing import List

from pydantic import BaseModel

from gateflow import BatchSpec, StepRegistry

registry = StepRegistry()


class PromptArgs(BaseModel):
    prompt: str


class Segment(BaseModel):
    id: str
    text: str


class ImageArgs(BaseModel):
    segments: List[Segment]


@registry.step("research", PromptArgs)
async def research(step_name, arguments, context):
    """Summarise the topic."""
    return {"summary": f"notes on {arguments.prompt}"}


@registry.step("segments", PromptArgs)
async def split(step_name, arguments, context):
    return {
        "segments": [
            {"id": "s1", "text": f"{arguments.prompt} intro"},
            {"id": "s2", "text": f"{arguments.prompt} outro"},
        ]
    }


@registry.step(
    "images",
    ImageArgs,
    needs_approval=True,
    batch=BatchSpec(items_field="segments"),
)
async def render(step_name, batch_item, context):
    """Render one image per segment."""
    context.log(f"rendering {batch_item.item.id}")
    return {"url": f"https://cdn/{batch_item.item.id}.png"}
