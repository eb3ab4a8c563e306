"""Rich formatting for the Cadence CLI."""

from __future__ import annotations

import json
from typing import Any, Literal

from rich.console import Console
from rich.table import Table

from cadence.execution.retry_engine import RunPhase

console = Console()


class PhaseColors:
    """Colors for run phases, shared by every command."""

    PHASE: dict[RunPhase, str] = {
        RunPhase.PLANNING: "yellow",
        RunPhase.EXECUTING: "blue",
        RunPhase.FINALIZING: "cyan",
        RunPhase.COMPLETED: "green",
        RunPhase.STOPPED: "dim",
        RunPhase.FAILED: "red",
    }

    @classmethod
    def get(cls, phase: RunPhase | None) -> str:
        if phase is None:
            return "white"
        return cls.PHASE.get(phase, "white")


def format_phase(phase: RunPhase | None) -> str:
    if phase is None:
        return "[dim]unknown[/dim]"
    color = PhaseColors.get(phase)
    return f"[{color}]{phase.value}[/{color}]"


def format_retries(attempts: dict[str, int], max_retries: dict[str, int]) -> str:
    """e.g. ``api 1/3  tool 0/2  finalize 0/2``."""
    if not attempts and not max_retries:
        return "-"
    keys = list(dict.fromkeys([*max_retries, *attempts]))
    return "  ".join(f"{k} {attempts.get(k, 0)}/{max_retries.get(k, '?')}" for k in keys)


def truncate(text: str | None, limit: int = 120) -> str:
    if not text:
        return ""
    text = " ".join(text.split())
    return text if len(text) <= limit else f"{text[:limit]}..."


def create_counts_table(title: str = "Messages by type") -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Type", style="cyan")
    table.add_column("Count", justify="right")
    return table


def create_runs_table() -> Table:
    table = Table(title="Runs", show_header=True, header_style="bold")
    table.add_column("Run", style="cyan", no_wrap=True)
    table.add_column("Phase")
    table.add_column("Retries")
    table.add_column("Plan", justify="right")
    table.add_column("Tools", justify="right")
    table.add_column("Msgs", justify="right")
    return table


def print_json(data: Any) -> None:
    """Print JSON without Rich markup or highlighting interfering."""
    console.print(
        json.dumps(data, indent=2, default=str),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


def output_error(
    message: str,
    *,
    hints: list[str] | None = None,
    severity: Literal["error", "warning"] = "error",
    json_output: bool = False,
) -> None:
    """Print an error or warning, as Rich markup or as a JSON object."""
    if json_output:
        result: dict[str, Any] = {"success": False, "message": message}
        if hints:
            result["hints"] = hints
        print_json(result)
        return

    color = "red" if severity == "error" else "yellow"
    label = "Error" if severity == "error" else "Warning"
    console.print(f"[{color}]{label}:[/{color}] {message}")
    if hints:
        console.print()
        console.print("[dim]Hints:[/dim]")
        for hint in hints:
            console.print(f"  - {hint}")
