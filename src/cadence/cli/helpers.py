"""Shared CLI state: logging options gathered by the global callbacks."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import typer
from rich.console import Console

from cadence.core.logging import configure_logging


@dataclass
class CliLoggingConfig:
    """Logging options collected from global flags before a command runs."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: Path | None = None
    format: Literal["json", "console", "both"] = "console"
    configured: bool = False


_log_config = CliLoggingConfig()

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_FORMATS = ("json", "console", "both")


def get_log_level() -> str:
    return _log_config.level


def set_log_level(level: str) -> None:
    normalized = level.upper()
    if normalized not in _LEVELS:
        raise typer.BadParameter(f"must be one of {', '.join(_LEVELS)}")
    _log_config.level = normalized  # type: ignore[assignment]


def get_log_format() -> str:
    return _log_config.format


def set_log_format(fmt: str) -> None:
    normalized = fmt.lower()
    if normalized not in _FORMATS:
        raise typer.BadParameter(f"must be one of {', '.join(_FORMATS)}")
    _log_config.format = normalized  # type: ignore[assignment]


def set_log_file(path: Path | None) -> None:
    _log_config.file = path


def configure_global_logging(console: Console) -> None:
    """Apply the collected logging options once per process.

    Raises:
        typer.Exit: If the combination is invalid (format "both" without a file).
    """
    if _log_config.configured:
        return
    try:
        configure_logging(
            level=_log_config.level,
            format=_log_config.format,
            file_path=_log_config.file,
        )
    except ValueError as e:
        console.print(f"[red]Logging configuration error:[/red] {e}")
        raise typer.Exit(1) from None
    _log_config.configured = True


def reset_logging_state() -> None:
    """Forget collected options so tests can reconfigure."""
    global _log_config
    _log_config = CliLoggingConfig()
