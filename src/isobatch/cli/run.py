"""
CLI: ``isobatch run`` - run shell commands, one isolated worker each.
"""

from __future__ import annotations

import subprocess
import time

import typer

from isobatch.cli.utils import console, print_error, print_json, print_table
from isobatch.core.errors import BatchTimeoutError, WorkerExecutionError


def _run_shell(command: str) -> int:
    """Executed inside the worker; output lands in the task's sink."""
    completed = subprocess.run(command, shell=True, check=True)
    return completed.returncode


def run_commands(
    commands: list[str] = typer.Argument(..., help="Shell commands to run in parallel."),
    timeout: float | None = typer.Option(  # noqa: UP007
        None, "--timeout", "-t", help="Seconds before outstanding commands are killed."
    ),
    kill_on_error: bool = typer.Option(False, "--kill-on-error", help="Kill the rest as soon as one fails."),
    label: str | None = typer.Option(None, "--label", "-l", help="Label prefix for diagnostics."),  # noqa: UP007
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON."),
) -> None:
    """Run each COMMAND in its own process and wait for all of them.

    Example::

        isobatch run "make lint" "make test" --kill-on-error
        isobatch run "sleep 5" --timeout 1
    """
    from isobatch.execution.controller import get_controller

    controller = get_controller()
    started = time.monotonic()
    try:
        with controller.parallel(timeout=timeout, kill_on_error=kill_on_error) as batch:
            for i, command in enumerate(commands):
                batch.submit(_run_shell, command, label=f"{label}[{i}]" if label else command)
    except WorkerExecutionError as e:
        print_error(e.message, code=e.short_kind)
        raise typer.Exit(code=1)
    except BatchTimeoutError as e:
        print_error(e.message, code="TIMEOUT")
        raise typer.Exit(code=2)

    elapsed = time.monotonic() - started
    rows = [
        {"command": command, "exit_code": code}
        for command, code in zip(commands, batch.values, strict=True)
    ]
    if as_json:
        print_json({"elapsed_seconds": round(elapsed, 3), "results": rows})
        return
    print_table(rows, title="isobatch run")
    console.print(f"[green]{len(rows)} command(s) finished in {elapsed:.2f}s[/green]")
