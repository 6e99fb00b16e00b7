"""The run command — execute a subagent request from the shell."""

from __future__ import annotations

import json as json_mod
from typing import Any, Optional

import click
from rich.text import Text

from relay.cli.app import async_cmd
from relay.cli.formatters import format_duration, get_console, status_indicator


def _load_items(raw: str | None, option: str):
    if raw is None:
        return None
    try:
        value = json_mod.loads(raw)
    except ValueError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=option)
    if not isinstance(value, list):
        raise click.BadParameter("expected a JSON array", param_hint=option)
    return value


def progress_line(event: Any) -> Optional[Text]:
    """One line of live progress for a subagent event, or None to skip it."""
    from relay.events import (
        SubagentStartEvent,
        SubagentStopEvent,
        SubagentToolCallEvent,
        SubagentToolResultEvent,
    )

    if isinstance(event, SubagentStartEvent):
        line = status_indicator("running")
        line.append(f"{event.agent} started on {event.model or '?'} (pid {event.pid})")
        return line
    if isinstance(event, SubagentToolCallEvent):
        return Text(f"  {event.agent} -> {event.tool_name}", style="dim")
    if isinstance(event, SubagentToolResultEvent) and event.denied:
        line = status_indicator("denied")
        line.append(f"{event.agent}: {event.tool_name} denied")
        return line
    if isinstance(event, SubagentStopEvent):
        if event.stop_reason in ("stalled", "denied"):
            status = event.stop_reason
        elif event.exit_code != 0 or event.stop_reason in ("error", "aborted"):
            status = "failed"
        else:
            status = "completed"
        line = status_indicator(status)
        line.append(f"{event.agent} finished in {format_duration(event.elapsed_seconds)}")
        return line
    return None


@click.command("run")
@click.option("--agent", default=None, help="Agent name (single mode)")
@click.option("--task", default=None, help="Task text (single mode)")
@click.option("--tasks", "tasks_json", default=None, help='Parallel: JSON [{"agent":..,"task":..}]')
@click.option("--centipede", "centipede_json", default=None, help="Chain: JSON array; {previous} is substituted")
@click.option("--model", default=None, help="Model name or auto-* keyword")
@click.option("--isolation", type=click.Choice(["worktree"]), default=None)
@click.option("--scope", type=click.Choice(["user", "project", "both"]), default="user", show_default=True)
@click.option("--cost", type=click.Choice(["eco", "balanced", "premium"]), default=None)
@click.option("--type", "task_type", type=click.Choice(["code", "vision", "text"]), default=None)
@click.option("--complexity", type=click.IntRange(1, 5), default=None)
@click.option("--session", default=None, help="Session id to resume (single mode)")
@click.option("--parent-model", default=None, help="Model to inherit when routing is exhausted")
@click.option("--cwd", type=click.Path(file_okay=False), default=None)
@click.option("--progress", is_flag=True, help="Stream child progress to stderr")
@click.pass_context
@async_cmd
async def run_cmd(
    ctx: click.Context,
    agent: str | None,
    task: str | None,
    tasks_json: str | None,
    centipede_json: str | None,
    model: str | None,
    isolation: str | None,
    scope: str,
    cost: str | None,
    task_type: str | None,
    complexity: int | None,
    session: str | None,
    parent_model: str | None,
    cwd: str | None,
    progress: bool,
) -> None:
    """Run one agent, a parallel batch, or a centipede chain."""
    from pydantic import ValidationError

    from relay.cli.runtime import build_router
    from relay.config import OrchestrationConfig
    from relay.events import EventBus
    from relay.orchestration.agents import AgentDefinitionError
    from relay.orchestration.models import SubagentRequest
    from relay.orchestration.orchestrator import InvalidRequestError, Orchestrator
    from relay.orchestration.runners import ProcessSubagentRunner

    try:
        request = SubagentRequest(
            agent=agent,
            task=task,
            tasks=_load_items(tasks_json, "--tasks"),
            centipede=_load_items(centipede_json, "--centipede"),
            agent_scope=scope,
            model=model,
            isolation=isolation,
            cost_preference=cost,
            task_type=task_type,
            complexity=complexity,
            session=session,
            cwd=cwd,
        )
    except ValidationError as e:
        raise click.ClickException(f"Invalid request: {e}")

    no_color = ctx.obj.get("no_color", False)
    event_bus: Optional[EventBus] = None
    if progress:
        err_console = get_console(no_color=no_color, stderr=True)
        event_bus = EventBus()

        def show(event: Any) -> None:
            line = progress_line(event)
            if line is not None:
                err_console.print(line)

        event_bus.subscribe("subagent.*", show)
        await event_bus.start()

    config = OrchestrationConfig()
    runner = ProcessSubagentRunner(config, event_bus=event_bus)
    orchestrator = Orchestrator(
        config,
        runner,
        build_router(config),
        event_bus=event_bus,
        parent_model=parent_model,
    )
    try:
        result = await orchestrator.execute(request)
    except (InvalidRequestError, AgentDefinitionError) as e:
        raise click.ClickException(str(e))
    finally:
        await orchestrator.shutdown()
        await runner.supervisor.shutdown()
        if event_bus is not None:
            await event_bus.stop()

    if ctx.obj.get("json"):
        click.echo(result.model_dump_json(indent=2))
    else:
        console = get_console(no_color=no_color)
        if ctx.obj.get("verbose"):
            for r in result.results:
                status = r.stop_reason if r.failed and r.stop_reason else ("failed" if r.failed else "completed")
                line = status_indicator(status)
                line.append(f"{r.agent} [{r.model or '?'}] {format_duration(r.elapsed_seconds)}")
                console.print(line)
        console.print(result.text, markup=False)

    if result.is_error:
        ctx.exit(1)
