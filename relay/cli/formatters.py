"""CLI formatters — color helpers, status indicators, table formatting."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text


def get_console(no_color: bool = False, stderr: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color, highlight=False, stderr=stderr)


def status_indicator(status: str) -> Text:
    """Map a run status to a colored indicator."""
    mapping = {
        "completed": Text("> ", style="green"),
        "running": Text("~ ", style="cyan"),
        "failed": Text("x ", style="red"),
        "denied": Text("x ", style="red"),
        "stalled": Text("! ", style="yellow"),
        "restricted": Text("! ", style="yellow"),
        "routing": Text("! ", style="yellow"),
    }
    return mapping.get(status, Text("? ", style="dim"))


def format_duration(seconds: float) -> str:
    """Format a duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        m = int(seconds // 60)
        s = int(seconds % 60)
        return f"{m}m{s:02d}s"
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    return f"{h}h {m:02d}m"


def format_cost(per_million: float) -> str:
    if per_million == 0:
        return "free"
    return f"${per_million:g}/M"


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(str(v) for v in row))
    return table
