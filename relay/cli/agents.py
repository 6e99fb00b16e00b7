"""Agent definition commands — list, resolve."""

from __future__ import annotations

import json as json_mod
import os

import click

from relay.cli.formatters import build_table, get_console


@click.group("agents")
def agents_group() -> None:
    """Inspect agent definitions."""
    pass


@agents_group.command("list")
@click.option(
    "--scope",
    type=click.Choice(["user", "project", "both"]),
    default="both",
    show_default=True,
    help="Which agent directories to scan",
)
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Project directory")
@click.pass_context
def agents_list(ctx: click.Context, scope: str, cwd: str | None) -> None:
    """List discovered agents."""
    from relay.orchestration.agents import AgentDefinitionError, discover_agents

    try:
        discovery = discover_agents(cwd or os.getcwd(), scope)  # type: ignore[arg-type]
    except AgentDefinitionError as e:
        raise click.ClickException(str(e))
    if ctx.obj.get("json"):
        click.echo(json_mod.dumps(
            [a.model_dump(exclude={"system_prompt"}) for a in discovery.agents],
            indent=2,
        ))
        return

    console = get_console(no_color=ctx.obj.get("no_color", False))
    if not discovery.agents:
        console.print("No agents found.")
        return
    rows = [
        [a.name, a.source, a.model or "-", ", ".join(a.tools or []) or "(default)", a.description]
        for a in discovery.agents
    ]
    console.print(build_table("Agents", ["Name", "Source", "Model", "Tools", "Description"], rows))


@agents_group.command("resolve")
@click.argument("name")
@click.option(
    "--scope",
    type=click.Choice(["user", "project", "both"]),
    default="both",
    show_default=True,
)
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Project directory")
@click.pass_context
def agents_resolve(ctx: click.Context, name: str, scope: str, cwd: str | None) -> None:
    """Show which agent a requested NAME resolves to."""
    from relay.orchestration.agents import (
        AgentDefinitionError,
        AgentNotFoundError,
        discover_agents,
        resolve_agent,
    )

    try:
        discovery = discover_agents(cwd or os.getcwd(), scope)  # type: ignore[arg-type]
    except AgentDefinitionError as e:
        raise click.ClickException(str(e))
    try:
        resolved = resolve_agent(name, discovery.agents, discovery.defaults)
    except AgentNotFoundError as e:
        raise click.ClickException(str(e))

    if ctx.obj.get("json"):
        click.echo(json_mod.dumps(resolved.model_dump(), indent=2))
        return
    agent = resolved.agent
    click.echo(f"{name} -> {agent.name} ({resolved.resolution})")
    click.echo(f"  Source: {agent.source} {agent.file_path}".rstrip())
    if agent.model:
        click.echo(f"  Model: {agent.model}")
    if agent.tools:
        click.echo(f"  Tools: {', '.join(agent.tools)}")
    if agent.isolation:
        click.echo(f"  Isolation: {agent.isolation}")
