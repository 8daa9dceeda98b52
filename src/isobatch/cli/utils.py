"""
CLI utility helpers - output formatting.
"""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_table(rows: list[dict[str, Any]], *, title: str = "", columns: list[str] | None = None) -> None:
    """Render a list of dicts as a rich table."""
    if not rows:
        console.print("[dim]No results.[/dim]")
        return
    columns = columns or list(rows[0].keys())
    table = Table(title=title or None, show_lines=False)
    for col in columns:
        table.add_column(col.replace("_", " ").title())
    for row in rows:
        table.add_row(*(str(row.get(col, "")) for col in columns))
    console.print(table)


def print_error(message: str, *, code: str = "ERROR") -> None:
    err_console.print(f"[bold red]Error[/bold red] ({code}): {message}")
