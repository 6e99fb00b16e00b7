"""CLI application — Click-based command hierarchy for Relay.

The main CLI group and global flags. Subcommand modules register
themselves by importing and adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any

import click

from relay import __version__


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.version_option(__version__, prog_name="relay")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, verbose: bool, no_color: bool) -> None:
    """Relay - subagent orchestration and model routing."""
    from relay.main import configure_logging

    configure_logging(verbose=verbose)
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommand groups/commands."""
    from relay.cli.agents import agents_group
    from relay.cli.config_cmd import config_group
    from relay.cli.models import models_group, route_cmd
    from relay.cli.run_cmd import run_cmd

    cli.add_command(agents_group)
    cli.add_command(models_group)
    cli.add_command(route_cmd)
    cli.add_command(run_cmd)
    cli.add_command(config_group)


_register_subcommands()
