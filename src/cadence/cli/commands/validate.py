"""``cadence validate``: check an NDJSON capture of RuntimeMessages.

Each non-blank line must parse as JSON, pass the envelope check, and
validate against its variant. Exit codes: 0 all valid, 1 one or more
invalid lines, 2 the file cannot be read.
"""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path

import typer

from cadence.core.errors import ProtocolValidationError
from cadence.protocol.messages import RUNTIME_MESSAGE_TYPES, is_valid_message, parse_message

from ..helpers import configure_global_logging
from ..output import console, create_counts_table, output_error, print_json


def _check_line(line: str) -> tuple[str | None, str | None]:
    """Return (message type, None) for a valid line, else (None, problem)."""
    try:
        value = json.loads(line)
    except json.JSONDecodeError as e:
        return None, f"not JSON ({e.msg})"
    if not is_valid_message(value):
        return None, "invalid envelope"
    try:
        message = parse_message(value)
    except ProtocolValidationError as e:
        return None, str(e)
    return message.type, None  # type: ignore[attr-defined]


def validate(
    events_file: Path = typer.Argument(
        ...,
        help="NDJSON file with one RuntimeMessage per line",
        exists=True,
        readable=True,
        dir_okay=False,
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output results as JSON",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="List every invalid line instead of the first ten",
    ),
) -> None:
    """Validate every message in an NDJSON event log."""
    configure_global_logging(console)

    try:
        lines = events_file.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        output_error(f"Cannot read {events_file}: {e}", json_output=json_output)
        raise typer.Exit(2) from None

    counts: Counter[str] = Counter()
    problems: list[tuple[int, str]] = []
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        message_type, problem = _check_line(line)
        if problem is not None:
            problems.append((number, problem))
        else:
            counts[message_type or ""] += 1

    valid = sum(counts.values())
    if json_output:
        print_json(
            {
                "valid": not problems,
                "messages": valid,
                "invalid": len(problems),
                "counts": dict(counts),
                "problems": [{"line": n, "problem": p} for n, p in problems],
            }
        )
    else:
        table = create_counts_table()
        for message_type in RUNTIME_MESSAGE_TYPES:
            if counts[message_type]:
                table.add_row(message_type, str(counts[message_type]))
        console.print(table)
        shown = problems if verbose else problems[:10]
        for number, problem in shown:
            console.print(f"[red]line {number}:[/red] {problem}", markup=True, highlight=False)
        if len(shown) < len(problems):
            console.print(f"[dim]... {len(problems) - len(shown)} more (use --verbose)[/dim]")
        if problems:
            console.print(f"[red]{len(problems)} invalid[/red], {valid} valid")
        else:
            console.print(f"[green]All {valid} messages valid[/green]")

    if problems:
        raise typer.Exit(1)
