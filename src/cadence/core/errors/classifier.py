"""Pattern-based classification of arbitrary failures.

Any failure value (exception, string, provider payload, tool result) is
reduced to a lower-cased message and matched against per-category patterns.
Categories are checked in a fixed order: policy, validation, api, then the
tool fallback. Policy and validation come first because their messages
often also mention the broad api keywords ("request blocked: timeout").
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from cadence.core.logging import get_logger

from .codes import ErrorCategory

_logger = get_logger("errors")


# =============================================================================
# Default pattern strings, kept at module scope so they are reviewable as data.
# =============================================================================

_DEFAULT_POLICY_PATTERNS: list[str] = [
    r"permission",
    r"blocked",
    r"not.?allowed",
    r"disabled",
]

_DEFAULT_VALIDATION_PATTERNS: list[str] = [
    r"invalid",
    r"missing",
    r"unknown.?tool",
]

_DEFAULT_API_PATTERNS: list[str] = [
    r"timeout",
    r"rate.?limit",
    r"429",
    r"502",
    r"503",
    r"network",
    r"fetch",
    r"api",
]

# Keys probed, in order, when a mapping is used as an error value
_MESSAGE_KEYS = ("message", "error", "name")


def _combine(patterns: list[str]) -> re.Pattern[str]:
    """Merge a pattern list into one case-insensitive alternation."""
    return re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)


def error_message(value: Any) -> str:
    """Best-effort human-readable message for any failure value.

    Strings pass through. Exceptions yield str(exc), or their class name
    when that is empty. Mappings yield their "message", "error" or "name"
    entry. Objects exposing a string ``message`` attribute yield it.
    Anything else is JSON-serialized, falling back to str().
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseException):
        return str(value) or type(value).__name__
    if isinstance(value, Mapping):
        for key in _MESSAGE_KEYS:
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate:
                return candidate
    else:
        candidate = getattr(value, "message", None)
        if isinstance(candidate, str) and candidate:
            return candidate
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def normalize_error_message(value: Any) -> str:
    """Lower-cased error_message(), the form the classifier matches against."""
    return error_message(value).lower()


@dataclass(frozen=True)
class ClassifiedFailure:
    """A failure paired with its display category."""

    category: ErrorCategory
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"category": self.category.value, "message": self.message}


class ErrorClassifier:
    """Classifies failures into ErrorCategory by message patterns.

    Pattern lists may be overridden per category; the check order
    (policy, validation, api, tool) is fixed.
    """

    def __init__(
        self,
        policy_patterns: list[str] | None = None,
        validation_patterns: list[str] | None = None,
        api_patterns: list[str] | None = None,
    ) -> None:
        self._ordered: list[tuple[ErrorCategory, re.Pattern[str]]] = [
            (ErrorCategory.POLICY, _combine(policy_patterns or _DEFAULT_POLICY_PATTERNS)),
            (
                ErrorCategory.VALIDATION,
                _combine(validation_patterns or _DEFAULT_VALIDATION_PATTERNS),
            ),
            (ErrorCategory.API, _combine(api_patterns or _DEFAULT_API_PATTERNS)),
        ]

    def classify(self, value: Any) -> ErrorCategory:
        """Return the first matching category, or TOOL when nothing matches."""
        text = normalize_error_message(value)
        if not text:
            return ErrorCategory.TOOL
        for category, pattern in self._ordered:
            if pattern.search(text):
                return category
        return ErrorCategory.TOOL

    def describe(self, value: Any) -> ClassifiedFailure:
        """Classify and keep the original-case message for display."""
        failure = ClassifiedFailure(category=self.classify(value), message=error_message(value))
        _logger.debug(
            "errors.classified",
            category=failure.category.value,
            message=failure.message[:200],
        )
        return failure


_default_classifier = ErrorClassifier()


def classify_error(value: Any) -> ErrorCategory:
    """Classify a failure with the default patterns."""
    return _default_classifier.classify(value)


def describe_error(value: Any) -> ClassifiedFailure:
    """Classify a failure with the default patterns, keeping its message."""
    return _default_classifier.describe(value)


__all__ = [
    "ClassifiedFailure",
    "ErrorClassifier",
    "classify_error",
    "describe_error",
    "error_message",
    "normalize_error_message",
]
