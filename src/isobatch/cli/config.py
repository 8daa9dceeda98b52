"""
CLI: ``isobatch config`` - show effective configuration.
"""

from __future__ import annotations

import typer

from isobatch.cli.utils import print_json, print_table

app = typer.Typer(no_args_is_help=True)


@app.command("show")
def show(
    fmt: str = typer.Option("table", "--format", "-f", help="table | json"),
) -> None:
    """Show the settings isobatch would use (env + .env resolved)."""
    from isobatch.core.settings import get_settings

    settings = get_settings()
    data = settings.model_dump(mode="json")

    if fmt == "json":
        print_json(data)
        return
    rows = [{"setting": key, "value": value} for key, value in data.items()]
    print_table(rows, title="isobatch settings")
