"""Model commands — list the registry, resolve a query, dry-run routing."""

from __future__ import annotations

import json as json_mod
import os

import click

from relay.cli.app import async_cmd
from relay.cli.formatters import build_table, format_cost, get_console


@click.group("models")
def models_group() -> None:
    """Inspect the model registry."""
    pass


@models_group.command("list")
@click.option("--available", is_flag=True, help="Only models with credentials")
@click.pass_context
def models_list(ctx: click.Context, available: bool) -> None:
    """List known models and whether credentials are present."""
    from relay.routing.matrix import get_model_ratings
    from relay.routing.registry import all_models, default_registry

    registry = default_registry()
    rows = []
    payload = []
    for model in all_models(registry):
        has_key = bool(registry.get_api_key_for(model.provider, model.id))
        if available and not has_key:
            continue
        ratings = get_model_ratings(model.id) or {}
        payload.append({**model.model_dump(), "has_credentials": has_key, "ratings": ratings})
        rows.append([
            model.display_name,
            format_cost(model.cost.input),
            format_cost(model.cost.output),
            " ".join(f"{k}{v}" for k, v in sorted(ratings.items())) or "-",
            "yes" if has_key else "no",
        ])

    if ctx.obj.get("json"):
        click.echo(json_mod.dumps(payload, indent=2))
        return
    console = get_console(no_color=ctx.obj.get("no_color", False))
    console.print(build_table("Models", ["Model", "Input", "Output", "Ratings", "Key"], rows))


@models_group.command("resolve")
@click.argument("query")
@click.pass_context
def models_resolve(ctx: click.Context, query: str) -> None:
    """Fuzzy-resolve QUERY against the registry."""
    from relay.routing.registry import default_registry
    from relay.routing.resolver import list_available_models, resolve_model_candidates

    registry = default_registry()
    candidates = resolve_model_candidates(query, registry)
    if not candidates:
        available = ", ".join(list_available_models(registry)[:15])
        raise click.ClickException(f'Model "{query}" not found in registry. Available: {available}')

    if ctx.obj.get("json"):
        click.echo(json_mod.dumps([c.model_dump() for c in candidates], indent=2))
        return
    click.echo(candidates[0].display_name)
    for other in candidates[1:]:
        click.echo(f"  also: {other.display_name}")


@click.command("route")
@click.argument("task")
@click.option("--model", "model_override", default=None, help="Model name or auto-* keyword")
@click.option("--cost", type=click.Choice(["eco", "balanced", "premium"]), default=None)
@click.option("--type", "task_type", type=click.Choice(["code", "vision", "text"]), default=None)
@click.option("--complexity", type=click.IntRange(1, 5), default=None)
@click.option("--parent-model", default=None, help="Model to inherit when routing is exhausted")
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Project directory")
@click.pass_context
@async_cmd
async def route_cmd(
    ctx: click.Context,
    task: str,
    model_override: str | None,
    cost: str | None,
    task_type: str | None,
    complexity: int | None,
    parent_model: str | None,
    cwd: str | None,
) -> None:
    """Show which model TASK would be routed to, without running it."""
    from relay.cli.runtime import build_router
    from relay.config import OrchestrationConfig
    from relay.routing.router import RoutingHints, RoutingSuccess

    router = build_router(OrchestrationConfig())
    result = await router.route(
        task,
        model_override=model_override,
        parent_model=parent_model,
        hints=RoutingHints(cost_preference=cost, task_type=task_type, complexity=complexity),
        cwd=cwd or os.getcwd(),
    )

    if ctx.obj.get("json"):
        click.echo(result.model_dump_json(indent=2))
    elif isinstance(result, RoutingSuccess):
        click.echo(f"{result.model.display_name} ({result.reason})")
        if result.classification is not None:
            c = result.classification
            click.echo(f"  Classified: {c.type}, complexity {c.complexity} ({c.reasoning})")
        if result.fallbacks:
            click.echo(f"  Fallbacks: {', '.join(m.display_name for m in result.fallbacks[:5])}")
    else:
        click.echo(f"No model: {result.error} ({result.reason})")

    if not isinstance(result, RoutingSuccess):
        ctx.exit(1)
