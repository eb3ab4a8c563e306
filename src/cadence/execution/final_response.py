"""Acceptance check for a model's final answer.

A final answer is rejected when it is not text, when it is blank (unless
the model already communicated through tool calls), or when it is a
give-up phrase instead of a real summary.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from cadence.core.constants import DEFAULT_QUIT_PHRASES


def is_valid_final_response(
    text: Any,
    quit_phrases: Iterable[str] | None = None,
    allow_empty: bool = False,
) -> bool:
    """Return True if ``text`` is an acceptable final answer.

    Args:
        text: Candidate answer.
        quit_phrases: Case-insensitive phrases marking a give-up answer.
            Defaults to DEFAULT_QUIT_PHRASES.
        allow_empty: Accept blank text (e.g. the model acted only through tools).
    """
    if not isinstance(text, str):
        return False
    trimmed = text.strip()
    if not trimmed:
        return allow_empty
    lowered = trimmed.lower()
    phrases = DEFAULT_QUIT_PHRASES if quit_phrases is None else quit_phrases
    return not any(phrase.lower() in lowered for phrase in phrases)


__all__ = ["is_valid_final_response"]
