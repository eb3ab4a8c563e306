"""Exception hierarchy for Cadence.

All Cadence-specific exceptions inherit from CadenceError, so callers can
catch broadly (CadenceError) or narrowly (e.g. RunCancelledError).
"""

from __future__ import annotations

from typing import Any


class CadenceError(Exception):
    """Base exception for all Cadence errors."""


class RunCancelledError(CadenceError):
    """Raised when a cancellation signal interrupts or pre-empts a wait.

    Never a retryable failure: drivers must not count it against any
    retry category. The phase is left untouched; the driver decides which
    terminal transition to issue.
    """

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(reason or "Run cancelled")


class ProtocolValidationError(CadenceError):
    """Raised when a value is not a well-formed RuntimeMessage.

    Producers raise this instead of emitting; consumers raise it from
    strict parsing. An invalid message never reaches an observer.
    """

    def __init__(self, message: str, value: Any = None) -> None:
        self.value = value
        super().__init__(message)


class UnhandledMessageTypeError(CadenceError):
    """Raised when a handler map does not cover every RuntimeMessage type."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"No handler for message type(s): {', '.join(missing)}")


class ConfigurationError(CadenceError):
    """Raised when a configuration file cannot be read or validated."""


__all__ = [
    "CadenceError",
    "ConfigurationError",
    "ProtocolValidationError",
    "RunCancelledError",
    "UnhandledMessageTypeError",
]
