"""Error categories used for display and triage.

ErrorCategory labels a failure for humans and dashboards. It is derived
from the failure message and never decides whether something is retried;
retry bookkeeping uses RetryCategory in cadence.execution.retry_engine.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Display label for a classified failure."""

    API = "api"
    """Model/provider call failed: timeouts, rate limits, gateway and network errors."""

    TOOL = "tool"
    """A tool raised or returned an error. Default when nothing else matches."""

    VALIDATION = "validation"
    """Bad input: invalid or missing arguments, unknown tool names."""

    POLICY = "policy"
    """Refused by a permission, allowlist, or settings gate."""


__all__ = ["ErrorCategory"]
