"""Configuration commands — get, set, unset, show."""

from __future__ import annotations

import json as json_mod
import math
from pathlib import Path

import click

from relay.settings_file import (
    delete_value,
    get_value,
    load_settings,
    project_settings_path,
    set_value,
    write_settings,
)


def _settings_path(use_global: bool) -> Path:
    if use_global:
        from relay.config import OrchestrationConfig

        return OrchestrationConfig().global_settings_path
    return project_settings_path(Path.cwd())


global_option = click.option(
    "--global", "use_global", is_flag=True, help="Use ~/.relay/settings.json instead of the project file"
)


@click.group("config", invoke_without_command=True)
@global_option
@click.pass_context
def config_group(ctx: click.Context, use_global: bool) -> None:
    """Manage Relay settings (.relay/settings.json)."""
    if ctx.invoked_subcommand is None:
        _show_config(_settings_path(use_global))


@config_group.command("get")
@click.argument("key")
@global_option
def config_get(key: str, use_global: bool) -> None:
    """Get a setting by dotted key (e.g. routing.costPreference)."""
    data = load_settings(_settings_path(use_global))
    try:
        value = get_value(data, key)
    except (KeyError, ValueError):
        raise click.ClickException(f"Key not found: {key}")
    click.echo(json_mod.dumps(value))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@global_option
def config_set(key: str, value: str, use_global: bool) -> None:
    """Set a setting by dotted key."""
    path = _settings_path(use_global)
    data = load_settings(path)
    parsed = _parse_value(value)
    try:
        set_value(data, key, parsed)
    except ValueError as e:
        raise click.ClickException(str(e))
    write_settings(path, data)
    click.echo(f"Set {key} = {json_mod.dumps(parsed)} in {path}")


@config_group.command("unset")
@click.argument("key")
@global_option
def config_unset(key: str, use_global: bool) -> None:
    """Remove a setting."""
    path = _settings_path(use_global)
    data = load_settings(path)
    try:
        delete_value(data, key)
    except (KeyError, ValueError):
        raise click.ClickException(f"Key not found: {key}")
    write_settings(path, data)
    click.echo(f"Removed {key} from {path}")


@config_group.command("show")
@global_option
def config_show(use_global: bool) -> None:
    """Print the whole settings document."""
    _show_config(_settings_path(use_global))


def _show_config(path: Path) -> None:
    data = load_settings(path)
    click.echo(f"Settings file: {path}{'' if path.is_file() else ' (missing)'}")
    if data:
        click.echo(json_mod.dumps(data, indent=2, sort_keys=True))
    else:
        click.echo("  (no settings)")


def _parse_value(raw: str):
    """Parse a string value into the appropriate JSON type."""
    if raw.lower() == "true":
        return True
    if raw.lower() == "false":
        return False
    if raw.lower() == "null":
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        val = float(raw)
        if not math.isfinite(val):
            raise click.ClickException(f"Invalid float value: {raw}")
        return val
    except ValueError:
        pass
    if raw[:1] in "[{":
        try:
            return json_mod.loads(raw)
        except ValueError:
            pass
    return raw
