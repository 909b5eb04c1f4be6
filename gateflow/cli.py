"""Command line interface for running gateflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer

from gateflow import WorkflowEngine, get_repository
from gateflow.config import load_config
from gateflow.contracts import AuthContext, EventType, RunState, RunStatus, StreamEvent
from gateflow.errors import GateflowError
from gateflow.steps import StepRegistry, load_registry
from gateflow.streaming import encode_sse
from gateflow.workflow import load_workflow

app = typer.Typer(help="CLI for gateflow workflows")

# Command groups
runs_app = typer.Typer(help="Commands for inspecting recorded runs")

app.add_typer(runs_app, name="runs")


@app.callback()
def main() -> None:
    """Gateflow CLI entry point."""
    pass


def _format_event(event: StreamEvent) -> str:
    data = dict(event.data)
    if event.type is EventType.LOG and "message" in data:
        message = data.pop("message")
        extra = f" {json.dumps(data, default=str)}" if data else ""
        return f"[{event.type.value}] {message}{extra}"
    return f"[{event.type.value}] {json.dumps(data, default=str)}"


def _ask_decision(event: StreamEvent, auto_approve: bool, reject: bool) -> bool:
    if auto_approve:
        return True
    if reject:
        return False
    typer.echo(f"Step {event.data.get('step')} requires approval.")
    typer.echo(f"Arguments: {json.dumps(event.data.get('arguments'), indent=2)}")
    return typer.confirm("Approve?", default=True)


async def _run_workflow(
    registry: StepRegistry,
    workflow_path: Path,
    run_input: Any,
    auto_approve: bool,
    reject: bool,
    sse: bool,
    token: Optional[str],
    config_path: Optional[str],
) -> RunState:
    config = load_config(config_path)
    workflow = load_workflow(workflow_path)
    engine = WorkflowEngine(
        registry, repository=get_repository(config=config), config=config
    )
    handle = await engine.start_run(
        workflow, run_input, auth_context=AuthContext.from_header(token)
    )

    async for event in handle.events:
        typer.echo(encode_sse(event) if sse else _format_event(event), nl=not sse)
        if event.type is EventType.APPROVAL_REQUIRED:
            approved = _ask_decision(event, auto_approve, reject)
            await engine.decide(event.data["approval_id"], approved)

    return await handle.wait()


@app.command("run")
def run(
    workflow_path: Path,
    steps: str = typer.Option(
        ..., "--steps", help="Step registry reference, e.g. 'mypipeline:registry'"
    ),
    input_json: Optional[str] = typer.Option(
        None, "--input", help="Run input as JSON (a plain string is used as-is)"
    ),
    auto_approve: bool = typer.Option(
        False, "--auto-approve", help="Approve every gated step without asking"
    ),
    reject: bool = typer.Option(
        False, "--reject", help="Reject every gated step without asking"
    ),
    sse: bool = typer.Option(False, "--sse", help="Print events as SSE frames"),
    token: Optional[str] = typer.Option(
        None, "--token", envvar="GATEFLOW_TOKEN", help="Bearer token for providers"
    ),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
) -> None:
    """
    Execute a YAML workflow and stream its events to the terminal.

    Gated steps prompt for a decision unless --auto-approve or --reject is
    given. Exits with code 1 when the run fails.

    Example:
        gateflow run video.yaml --steps mypipeline:registry --input '{"prompt": "cats"}'
        gateflow run video.yaml --steps mypipeline:registry --auto-approve --sse
    """
    if auto_approve and reject:
        typer.secho("--auto-approve and --reject are exclusive", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    logging.basicConfig(level=load_config(config).log_level.upper())

    run_input: Any = None
    if input_json is not None:
        try:
            run_input = json.loads(input_json)
        except json.JSONDecodeError:
            run_input = input_json

    try:
        registry = load_registry(steps)
        state = asyncio.run(
            _run_workflow(
                registry,
                workflow_path,
                run_input,
                auto_approve,
                reject,
                sse,
                token,
                config,
            )
        )
    except GateflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if not sse:
        typer.echo(f"Run {state.run_id}: {state.status.value}")
    if state.status is RunStatus.FAILED:
        raise typer.Exit(code=1)


@app.command("steps")
def list_steps(registry_ref: str) -> None:
    """
    List the steps of a registry.

    Example:
        gateflow steps mypipeline:registry
        # Output: research
        #         images    [approval, batch over segments]
    """
    try:
        registry = load_registry(registry_ref)
    except GateflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if not len(registry):
        typer.echo("No steps registered")
        return
    for definition in registry:
        flags = []
        if definition.needs_approval:
            flags.append("approval")
        if definition.batch is not None:
            flags.append(f"batch over {definition.batch.items_field}")
        line = definition.name
        if flags:
            line += f"\t[{', '.join(flags)}]"
        typer.echo(line)


@runs_app.command("list")
def runs_list() -> None:
    """
    List recorded runs with their status.

    Example:
        gateflow runs list
        # Output: 3f0c...    short-video    completed
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for run_record in runs:
        typer.echo(f"{run_record.run_id}\t{run_record.workflow_name}\t{run_record.status}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """
    Show the audit trail of one run.

    Args:
        run_id: Run to inspect (get from 'runs list')
    """
    repo = get_repository()
    run_record = asyncio.run(repo.get_run(run_id))
    if run_record is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run_record.run_id} ({run_record.workflow_name}): {run_record.status}")
    if run_record.input:
        typer.echo(f"Input: {run_record.input}")
    if run_record.error:
        typer.echo(f"Error: {run_record.error}")
    for record in run_record.steps:
        label = record.step_name
        if record.item_id is not None:
            label += f"[{record.item_id}]"
        typer.echo(
            f"- {label}: {record.status}"
            + (f" ({record.recorded_at})" if record.recorded_at else "")
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
