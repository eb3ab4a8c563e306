"""Cadence developer CLI.

Tools for working with captured RuntimeMessage streams (NDJSON, one wire
message per line):

    cadence validate EVENTS.ndjson
    cadence replay EVENTS.ndjson [--run-id ID] [--json]
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from cadence import __version__

from . import helpers as helpers
from .commands import replay, validate
from .helpers import set_log_file, set_log_format, set_log_level
from .output import console

app = typer.Typer(
    name="cadence",
    help="Inspect and validate Cadence run event logs",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"Cadence v{__version__}")
        raise typer.Exit()


def log_level_callback(value: str | None) -> str | None:
    if value:
        set_log_level(value)
    return value


def log_format_callback(value: str | None) -> str | None:
    if value:
        set_log_format(value)
    return value


def log_file_callback(value: Path | None) -> Path | None:
    if value:
        set_log_file(value)
    return value


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            callback=log_level_callback,
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="CADENCE_LOG_LEVEL",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            callback=log_format_callback,
            help="Log format: json, console, or both",
            envvar="CADENCE_LOG_FORMAT",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            callback=log_file_callback,
            help="Path for log file output",
            envvar="CADENCE_LOG_FILE",
        ),
    ] = None,
) -> None:
    """Cadence - inspect and validate run event logs."""


app.command()(validate)
app.command()(replay)

__all__ = ["app", "console", "main"]
