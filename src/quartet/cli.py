from __future__ import annotations

import asyncio
import json
import shlex
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import click

from quartet.backends import build_tool
from quartet.config import QuartetConfig, load_config, save_config
from quartet.engine import WorkflowEngine
from quartet.errors import UnknownStageError
from quartet.events import CallbackSink, EventSink, FanoutSink, StoreEventSink, WorkflowEvent
from quartet.runtime import ProcessRunner
from quartet.service import Orchestrator
from quartet.stages import PIPELINE
from quartet.state import StateStore


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: QuartetConfig
    store: StateStore
    orchestrator: Orchestrator


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _record_runner_event(store: StateStore, event: dict[str, Any], max_events: int) -> None:
    store.record_event(
        {
            "type": "runner",
            "payload": dict(event),
            "at": datetime.now(UTC).replace(microsecond=0).isoformat(),
        },
        max_events=max_events,
    )


def _echo_event(event: WorkflowEvent, *, stream_output: bool) -> None:
    payload = event.payload
    if event.type == "stage_started":
        click.echo(f"[{payload['stage']}] started ({payload['task_id']})")
    elif event.type == "stage_completed":
        click.echo(f"[{payload['stage']}] {payload['status']}")
    elif event.type == "output_line" and stream_output:
        click.echo(f"  {payload['stage']} | {payload['line']}")
    elif event.type == "error":
        click.echo(f"[error] {payload.get('reason', '')}", err=True)


def _load_runtime(
    repo_root: Path,
    config_path: Path,
    *,
    stream_output: bool = False,
    echo_events: bool = True,
) -> Runtime:
    config = load_config(config_path)
    store = StateStore(_resolve_path(repo_root, config.state.directory))
    sinks: list[EventSink] = [
        StoreEventSink(
            store,
            max_events=config.state.max_events,
            record_output_lines=config.state.record_output_lines,
        ),
    ]
    if echo_events:
        sinks.append(CallbackSink(lambda event: _echo_event(event, stream_output=stream_output)))
    runner = ProcessRunner(
        build_tool(config.tool),
        config=config.runner,
        event_hook=lambda event: _record_runner_event(store, event, config.state.max_events),
    )
    engine = WorkflowEngine(runner, store=store, sink=FanoutSink(sinks), config=config)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        orchestrator=Orchestrator(engine),
    )


def _new_session_id() -> str:
    return f"session-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:6]}"


def _workspace_for(runtime: Runtime, session_id: str, workspace_value: str | None) -> Path:
    if workspace_value:
        workspace = _resolve_path(runtime.repo_root, workspace_value)
    else:
        root = _resolve_path(runtime.repo_root, runtime.config.project.workspace_root)
        workspace = root / session_id
    workspace.mkdir(parents=True, exist_ok=True)
    return workspace


@click.group()
def cli() -> None:
    """Quartet CLI."""


@cli.command("init")
@click.option("--tool", "tool_name", type=click.Choice(["claude", "codex", "command"]), default=None)
@click.option("--config", "config_value", default="quartet.toml", show_default=True)
def init_command(tool_name: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = load_config(config_path)
    if tool_name:
        config.tool.name = tool_name  # type: ignore[assignment]
    save_config(config_path, config)
    StateStore(_resolve_path(repo_root, config.state.directory))

    click.echo(f"Initialized Quartet in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Tool: {config.tool.name}")


@cli.command("run")
@click.argument("request")
@click.option("--session", "session_id", default=None)
@click.option("--workspace", "workspace_value", default=None)
@click.option("--stream", "stream_output", is_flag=True, default=False)
@click.option("--json", "json_output", is_flag=True, default=False)
@click.option("--config", "config_value", default="quartet.toml", show_default=True)
def run_command(
    request: str,
    session_id: str | None,
    workspace_value: str | None,
    stream_output: bool,
    json_output: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root,
        _resolve_path(repo_root, config_value),
        stream_output=stream_output,
        echo_events=not json_output,
    )
    session_id = session_id or _new_session_id()
    workspace = _workspace_for(runtime, session_id, workspace_value)

    outcome = asyncio.run(runtime.orchestrator.start_workflow(session_id, workspace, request))

    if json_output:
        click.echo(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2))
        if not outcome.succeeded:
            raise click.exceptions.Exit(1)
        return

    click.echo(f"Session: {outcome.session_id}")
    click.echo(f"Workspace: {workspace}")
    click.echo(f"Stages completed: {', '.join(outcome.stage_outputs) or 'none'}")
    if not outcome.succeeded:
        raise click.ClickException(
            f"Workflow failed at {outcome.failed_stage}: {outcome.failure_reason}"
        )
    click.echo("Workflow completed.")


@cli.command("chat")
@click.argument("stage")
@click.argument("message")
@click.option("--session", "session_id", required=True)
@click.option("--workspace", "workspace_value", default=None)
@click.option("--config", "config_value", default="quartet.toml", show_default=True)
def chat_command(
    stage: str,
    message: str,
    session_id: str,
    workspace_value: str | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    stored = runtime.store.get_workflow(session_id)
    if workspace_value is None and stored and stored.get("workspace"):
        workspace_value = str(stored["workspace"])
    workspace = _workspace_for(runtime, session_id, workspace_value)
    try:
        reply = asyncio.run(
            runtime.orchestrator.run_single_stage(session_id, workspace, stage, message)
        )
    except UnknownStageError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(reply)


@cli.command("status")
@click.argument("session_id", required=False)
@click.option("--tasks", "include_tasks", is_flag=True, default=False)
@click.option("--config", "config_value", default="quartet.toml", show_default=True)
def status_command(session_id: str | None, include_tasks: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_path(repo_root, config_value))
    store = StateStore(_resolve_path(repo_root, config.state.directory))
    if session_id is None:
        payload: Any = [
            {
                "session_id": item.get("session_id"),
                "status": item.get("status"),
                "current_stage": item.get("current_stage"),
                "failed_stage": item.get("failed_stage"),
                "started_at": item.get("started_at"),
                "completed_at": item.get("completed_at"),
            }
            for item in store.list_workflows()
        ]
    else:
        workflow = store.get_workflow(session_id)
        if workflow is None:
            raise click.ClickException(f"Workflow not found: {session_id}")
        payload = dict(workflow)
        if include_tasks:
            payload["tasks"] = store.list_tasks(session_id)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("stages")
def stages_command() -> None:
    for stage in PIPELINE:
        click.echo(stage.value)


@cli.command("tool")
@click.argument("tool_name", type=click.Choice(["claude", "codex", "command"]))
@click.option("--command", "command_value", default=None, help="Argv prefix for the command tool.")
@click.option("--config", "config_value", default="quartet.toml", show_default=True)
def tool_command(tool_name: str, command_value: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = load_config(config_path)
    if tool_name == "command":
        if not command_value and not config.tool.command:
            raise click.ClickException("The command tool requires --command.")
        if command_value:
            config.tool.command = shlex.split(command_value)
    config.tool.name = tool_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Tool set to {tool_name}")
