"""
Root Typer application for the isobatch CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from isobatch.cli.config import app as config_app
from isobatch.cli.run import run_commands

app = Typer(
    name="isobatch",
    help="isobatch - run independent work in isolated processes.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        from isobatch import __version__

        typer.echo(f"isobatch {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override ISOBATCH_LOG_LEVEL."),  # noqa: UP007
) -> None:
    """isobatch CLI - run shell commands in parallel worker processes."""
    from isobatch.core.logging import configure_logging
    from isobatch.core.settings import get_settings

    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=settings.log_format == "json",
    )


app.command("run")(run_commands)
app.add_typer(config_app, name="config", help="Inspect configuration.")


if __name__ == "__main__":
    app()
