"""``cadence replay``: fold an NDJSON capture into per-run summaries."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.markup import escape

from cadence.execution.plan import PlanStatus
from cadence.protocol.history import RunRecord, load_ndjson

from ..helpers import configure_global_logging
from ..output import (
    console,
    create_runs_table,
    format_phase,
    format_retries,
    output_error,
    print_json,
    truncate,
)

_STEP_MARKS = {
    PlanStatus.DONE: "[green]x[/green]",
    PlanStatus.RUNNING: "[blue]>[/blue]",
    PlanStatus.BLOCKED: "[red]![/red]",
    PlanStatus.PENDING: " ",
}


def _print_run(record: RunRecord) -> None:
    header = f"[bold]{escape(record.run_id)}[/bold] {format_phase(record.phase)}"
    if record.parent_run_id:
        header += f" [dim](sub-agent of {escape(record.parent_run_id)})[/dim]"
    console.print()
    console.print(header)
    if record.user_message:
        console.print(f"  Request: {escape(truncate(record.user_message))}")
    console.print(f"  Retries: {format_retries(record.attempts, record.max_retries)}")
    if record.last_error:
        console.print(f"  Last error: [red]{escape(truncate(record.last_error))}[/red]")
    if record.plan is not None:
        done, total = record.plan_progress
        console.print(f"  Plan: {done}/{total} done")
        for step in record.plan.steps:
            console.print(f"    [{_STEP_MARKS[step.status]}] {escape(step.title)}")
    for call in record.tool_calls.values():
        color = {"success": "green", "error": "red"}.get(call.status, "yellow")
        console.print(f"  Tool {escape(call.tool)}: [{color}]{call.status}[/{color}]")
    for error in record.errors:
        console.print(f"  [red]Error:[/red] {escape(truncate(error))}")
    for warning in record.warnings:
        console.print(f"  [yellow]Warning:[/yellow] {escape(truncate(warning))}")
    if record.final_content is not None:
        console.print(f"  Final: {escape(truncate(record.final_content, 300))}")


def replay(
    events_file: Path = typer.Argument(
        ...,
        help="NDJSON file with one RuntimeMessage per line",
        exists=True,
        readable=True,
        dir_okay=False,
    ),
    run_id: str | None = typer.Option(
        None,
        "--run-id",
        "-r",
        help="Only show this run",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output run summaries as JSON",
    ),
) -> None:
    """Replay an NDJSON event log and summarize each run."""
    configure_global_logging(console)

    history = load_ndjson(events_file)
    records = history.runs()
    if run_id is not None:
        records = [r for r in records if r.run_id == run_id]
        if not records:
            output_error(
                f"Run not found: {run_id}",
                hints=["Run 'cadence replay FILE' without --run-id to list runs."],
                json_output=json_output,
            )
            raise typer.Exit(1)

    if json_output:
        print_json({"runs": [r.to_dict() for r in records], "rejected": history.rejected})
        return

    if not records:
        console.print("[yellow]No runs found[/yellow]")
    else:
        table = create_runs_table()
        for record in records:
            done, total = record.plan_progress
            table.add_row(
                escape(record.run_id),
                format_phase(record.phase),
                format_retries(record.attempts, record.max_retries),
                f"{done}/{total}" if total else "-",
                str(len(record.tool_calls)),
                str(record.message_count),
            )
        console.print(table)
        for record in records:
            _print_run(record)

    if history.rejected:
        console.print(f"\n[yellow]{history.rejected} line(s) skipped as invalid[/yellow]")
