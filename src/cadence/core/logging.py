"""Structured logging infrastructure for Cadence.

Wraps structlog with run correlation (run_id, session_id, turn_id) so every
line emitted while a run is being driven can be tied back to the
RuntimeMessages that run produced.

Example usage:
    from cadence.core.logging import RunLogContext, configure_logging, get_logger, with_run_context

    configure_logging(level="DEBUG", format="console")
    logger = get_logger("runner")

    ctx = RunLogContext(run_id="run-1", session_id="session-1")
    with with_run_context(ctx):
        logger.info("runner.started")  # includes run_id, session_id
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Field names containing any of these are redacted before rendering
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "api-key",
    "token",
    "secret",
    "password",
    "credential",
    "auth",
    "bearer",
    "authorization",
})

# Token *counts* are routine telemetry, not credentials
_SENSITIVE_EXEMPT_SUFFIXES = ("_tokens", "tokens")


@dataclass(frozen=True)
class RunLogContext:
    """Immutable correlation context for one run.

    Attributes:
        run_id: The run being driven.
        session_id: Conversation session the run belongs to.
        turn_id: Optional turn within the session.
        component: Component name for the current operation.
        parent_run_id: Set for sub-agent runs.
    """

    run_id: str
    session_id: str | None = None
    turn_id: str | None = None
    component: str = "unknown"
    parent_run_id: str | None = None

    def with_component(self, component: str) -> RunLogContext:
        """Return a copy bound to a different component."""
        return replace(self, component=component)

    def as_child(self, child_run_id: str) -> RunLogContext:
        """Return a context for a sub-agent run nested under this one."""
        return replace(self, run_id=child_run_id, parent_run_id=self.run_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dict for logging, omitting unset fields."""
        result: dict[str, Any] = {"run_id": self.run_id, "component": self.component}
        if self.session_id is not None:
            result["session_id"] = self.session_id
        if self.turn_id is not None:
            result["turn_id"] = self.turn_id
        if self.parent_run_id is not None:
            result["parent_run_id"] = self.parent_run_id
        return result


_current_context: ContextVar[RunLogContext | None] = ContextVar(
    "cadence_run_context", default=None
)


def get_current_context() -> RunLogContext | None:
    """Get the RunLogContext active in this task, if any."""
    return _current_context.get()


@contextmanager
def with_run_context(ctx: RunLogContext) -> Iterator[RunLogContext]:
    """Set the run correlation context for the duration of a block.

    Uses a ContextVar, so concurrently driven runs in separate asyncio tasks
    keep separate contexts.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _sanitize_value(key: str, value: Any) -> Any:
    """Return "[REDACTED]" for sensitive keys, otherwise the value unchanged."""
    key_lower = key.lower()
    if key_lower.endswith(_SENSITIVE_EXEMPT_SUFFIXES):
        return value
    for pattern in SENSITIVE_PATTERNS:
        if pattern in key_lower:
            return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields, one level deep."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _sanitize_value(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _sanitize_value(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that merges the active RunLogContext.

    Explicitly bound keys take precedence over context fields.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class CadenceLogger:
    """Component logger wrapping structlog.

    The underlying structlog logger is fetched on every call, so loggers
    created at import time still honour a later configure_logging().
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> CadenceLogger:
        """Return a new logger with additional bound context."""
        return CadenceLogger(**{**self._context, **context})

    def unbind(self, *keys: str) -> CadenceLogger:
        """Return a new logger with the given keys removed."""
        remaining = {k: v for k, v in self._context.items() if k not in keys}
        remaining.setdefault("component", self._component)
        return CadenceLogger(**remaining)

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log an error with traceback. Call from within an exception handler."""
        self._get_logger().exception(event, **kw)


def _build_processors(
    renderer: Processor,
    include_timestamps: bool,
    include_context: bool,
) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
    ]
    if include_context:
        processors.append(_add_context)
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console", "both"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
    include_timestamps: bool = True,
    include_context: bool = True,
) -> None:
    """Configure Cadence structured logging.

    Call once at startup, before the first run is driven.

    Args:
        level: Minimum log level to capture.
        format: "console" for human-readable stderr, "json" for structured
            output (to file_path if given, else stdout), "both" for console
            on stderr plus JSON to file_path.
        file_path: Log file for JSON output. Required for format="both".
        max_file_size_mb: Size at which the log file rotates.
        backup_count: Rotated files to keep.
        include_timestamps: Add ISO8601 UTC timestamps.
        include_context: Merge the active RunLogContext into each entry.

    Raises:
        ValueError: If format="both" but file_path is not provided.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = getattr(logging, level)
    handlers: list[logging.Handler] = []

    if format in ("console", "both"):
        handlers.append(logging.StreamHandler(sys.stderr))

    if format in ("json", "both"):
        if file_path is not None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                RotatingFileHandler(
                    file_path,
                    maxBytes=max_file_size_mb * 1024 * 1024,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
            )
        else:
            handlers.append(logging.StreamHandler(sys.stdout))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    # cache_logger_on_first_use=False so module-level loggers pick up reconfiguration
    structlog.configure(
        processors=_build_processors(renderer, include_timestamps, include_context),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> CadenceLogger:
    """Get a Cadence logger for a component (e.g. "runner", "retry_engine")."""
    return CadenceLogger(component, **initial_context)


__all__ = [
    "CadenceLogger",
    "RunLogContext",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_run_context",
]
