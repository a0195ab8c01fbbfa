"""CLI formatters: color helpers, state indicators, table formatting."""

from __future__ import annotations

import time
from typing import Any, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def status_indicator(state: str) -> Text:
    """Map a gateway state to a colored indicator."""
    mapping = {
        "connected": Text("> ", style="green"),
        "authenticating": Text("~ ", style="cyan"),
        "reconnecting": Text("! ", style="yellow"),
        "idle": Text("- ", style="dim"),
        "closed": Text("x ", style="red"),
    }
    return mapping.get(state, Text("? ", style="dim"))


def yes_no(value: Any) -> str:
    return "yes" if value else "no"


def format_timestamp(epoch: Optional[float]) -> str:
    if not epoch:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(epoch))


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table
