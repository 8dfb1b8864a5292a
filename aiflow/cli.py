"""Command line interface for running aiflow workers and managing flows."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

import typer
import yaml

from .config import AiflowConfig, load_config
from .container import FlowRuntime, build_runtime
from .errors import AiflowError
from .persistence.models import FlowStatus
from .registry import AgentRegistry, ToolRegistry

app = typer.Typer(help="CLI for aiflow multi-step flows")

# Command groups
worker_app = typer.Typer(help="Commands for running flow workers")
flow_app = typer.Typer(help="Commands for inspecting and steering flows")

app.add_typer(worker_app, name="worker")
app.add_typer(flow_app, name="flow")

_state: dict[str, Any] = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to YAML config (default: AIFLOW_CONFIG or config.yaml)"
    ),
) -> None:
    """aiflow CLI entry point."""
    _state["config_path"] = str(config) if config else None
    logging.basicConfig(
        level=_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config() -> AiflowConfig:
    return load_config(_state["config_path"])


def _load_object(spec: str) -> Any:
    """Import ``package.module:attribute``."""
    module_name, _, attribute = spec.partition(":")
    if not attribute:
        raise typer.BadParameter(f"Expected 'module:attribute', got {spec!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)


def _runtime(tools: Optional[str] = None, agents: Optional[str] = None) -> FlowRuntime:
    tool_registry = _load_object(tools) if tools else None
    if tool_registry is not None and not isinstance(tool_registry, ToolRegistry):
        raise typer.BadParameter(f"{tools} is not a ToolRegistry")
    agent_registry = _load_object(agents) if agents else None
    if agent_registry is not None and not isinstance(agent_registry, AgentRegistry):
        raise typer.BadParameter(f"{agents} is not an AgentRegistry")
    return build_runtime(_config(), tools=tool_registry, agents=agent_registry)


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
    once: bool = typer.Option(False, help="Process the jobs due now and exit"),
    tools: Optional[str] = typer.Option(
        None, help="ToolRegistry to load, as 'module:attribute'"
    ),
    agents: Optional[str] = typer.Option(
        None, help="AgentRegistry to load, as 'module:attribute'"
    ),
) -> None:
    """
    Run a worker that executes flow steps from the queue.

    Example:
        aiflow worker run --tools myapp.tools:registry
        aiflow worker run --lifespan 300
    """
    runtime = _runtime(tools, agents)

    async def _run() -> int:
        await runtime.transport.connect()
        try:
            if once:
                return await runtime.worker.run_once()
            await runtime.worker.start(lifespan=lifespan)
            return runtime.worker.processed
        finally:
            await runtime.transport.disconnect()

    typer.echo(f"Starting flow worker on queue {runtime.dispatcher.queue}")
    try:
        processed = asyncio.run(_run())
    except NotImplementedError as exc:
        _fail(str(exc))
    typer.echo(f"Processed {processed} job(s)")


@flow_app.command("start")
def flow_start(
    plan: Path,
    user_id: Optional[str] = typer.Option(None, help="Owner of the flow"),
) -> None:
    """
    Create a flow from a YAML plan and submit it.

    The plan holds ``steps`` (a list of step definitions) and optionally
    ``context`` and ``original_request``.

    Example:
        aiflow flow start ./plan.yaml --user-id u-42
    """
    if not plan.exists():
        _fail("Plan file does not exist")
    data = yaml.safe_load(plan.read_text(encoding="utf-8")) or {}
    steps = data.get("steps") or []
    if not steps:
        _fail("Plan has no steps")

    runtime = _runtime()

    async def _start():
        await runtime.transport.connect()
        try:
            return await runtime.service.start_flow(
                steps,
                context=data.get("context"),
                original_request=data.get("original_request"),
                user_id=user_id,
            )
        finally:
            await runtime.transport.disconnect()

    flow = asyncio.run(_start())
    typer.echo("Flow started successfully!")
    typer.echo(f"Flow ID: {flow.id}")
    typer.echo(f"Steps: {flow.total_steps}")


@flow_app.command("list")
def flow_list(
    status: Optional[List[FlowStatus]] = typer.Option(
        None, help="Only show flows in this status (repeatable)"
    ),
    user_id: Optional[str] = typer.Option(None, help="Only show this user's flows"),
) -> None:
    """
    List flows with their status and progress.

    Example:
        aiflow flow list --status running --status awaiting_user
    """
    runtime = _runtime()
    flows = asyncio.run(
        runtime.repository.list_flows(status=status or None, user_id=user_id)
    )
    if not flows:
        typer.echo("No flows found")
        return
    for flow in sorted(flows, key=lambda f: f.created_at):
        typer.echo(
            f"{flow.id}\t{flow.status.value}\t{flow.completed_steps}/{flow.total_steps}"
        )


@flow_app.command("show")
def flow_show(flow_id: str) -> None:
    """Show a flow's status, pending prompt and steps."""
    runtime = _runtime()
    try:
        flow = asyncio.run(runtime.service.get_flow(flow_id))
    except AiflowError:
        _fail("Flow not found")
    typer.echo(
        f"Flow {flow.id}: {flow.status.value} "
        f"({flow.completed_steps}/{flow.total_steps}, {flow.progress_percentage()}%)"
    )
    if flow.original_request:
        typer.echo(f"Request: {flow.original_request}")
    if flow.last_error:
        typer.echo(f"Last error: {flow.last_error}")
    if flow.pending_prompt:
        prompt = flow.pending_prompt
        typer.echo(f"Waiting for {prompt.prompt_type.value}: {prompt.message}")
        for option in prompt.options or []:
            typer.echo(f"  [{option.value}] {option.label}")
    for step in sorted(flow.steps, key=lambda s: s.position):
        label = step.title or step.tool or step.step_type.value
        typer.echo(f"- {step.position}. {label}: {step.status.value}")


def _parse_response(response: str) -> Any:
    try:
        return json.loads(response)
    except ValueError:
        return response


@flow_app.command("respond")
def flow_respond(
    flow_id: str,
    response: str,
    step: Optional[str] = typer.Option(None, help="Step the answer is for"),
) -> None:
    """
    Answer a flow's pending prompt and resume it.

    JSON responses are decoded, anything else is passed as text.

    Example:
        aiflow flow respond 3f2a... yes
        aiflow flow respond 3f2a... '{"value": "2"}'
    """
    runtime = _runtime()

    async def _resume():
        await runtime.transport.connect()
        try:
            return await runtime.service.resume(
                flow_id, _parse_response(response), step_id=step
            )
        finally:
            await runtime.transport.disconnect()

    try:
        flow = asyncio.run(_resume())
    except AiflowError as exc:
        _fail(str(exc))
    typer.echo(f"Flow {flow.id}: {flow.status.value}")


@flow_app.command("cancel")
def flow_cancel(flow_id: str) -> None:
    """Cancel a flow that has not finished."""
    runtime = _runtime()
    try:
        flow = asyncio.run(runtime.service.cancel(flow_id))
    except AiflowError as exc:
        _fail(str(exc))
    typer.echo(f"Flow {flow.id}: {flow.status.value}")


@flow_app.command("retry")
def flow_retry(flow_id: str) -> None:
    """Restart a failed flow from its first unfinished step."""
    runtime = _runtime()

    async def _retry():
        await runtime.transport.connect()
        try:
            return await runtime.service.retry(flow_id)
        finally:
            await runtime.transport.disconnect()

    try:
        flow = asyncio.run(_retry())
    except AiflowError as exc:
        _fail(str(exc))
    typer.echo(f"Flow {flow.id}: {flow.status.value} (retry {flow.retry_count}/{flow.max_retries})")


@flow_app.command("logs")
def flow_logs(flow_id: str) -> None:
    """Print a flow's audit trail."""
    runtime = _runtime()
    try:
        entries = asyncio.run(runtime.service.get_logs(flow_id))
    except AiflowError:
        _fail("Flow not found")
    if not entries:
        typer.echo("No log entries")
        return
    for entry in entries:
        typer.echo(
            f"{entry.created_at.isoformat()}\t{entry.actor.value}\t"
            f"{entry.event_type.value}\t{entry.message}"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
