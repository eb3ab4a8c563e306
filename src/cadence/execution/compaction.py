"""Conversation-size estimation and compaction helpers.

Sizes are rough token estimates (characters / 4). When a history crosses
the configured fraction of the context limit, older messages are replaced
by a single system summary and the most recent ones are preserved.
"""

from __future__ import annotations

import json
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from cadence.core.constants import (
    CHARS_PER_TOKEN,
    COMPACTION_BASE_TOKENS,
    COMPACTION_THRESHOLD,
)

Message = dict[str, Any]


def _chars_to_tokens(length: int) -> int:
    return math.ceil(length / CHARS_PER_TOKEN)


def _json_length(value: Any) -> int:
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return len(str(value))


def estimate_tokens(content: Any) -> int:
    """Estimate tokens in a message's content (string, part list, or object)."""
    if not content:
        return 0
    if isinstance(content, str):
        return _chars_to_tokens(len(content))
    if isinstance(content, list):
        total = 0
        for part in content:
            if isinstance(part, str):
                total += _chars_to_tokens(len(part))
            elif isinstance(part, dict):
                text = part.get("text")
                if isinstance(text, str):
                    total += _chars_to_tokens(len(text))
                else:
                    total += _chars_to_tokens(_json_length(part))
        return total
    return _chars_to_tokens(_json_length(content))


def estimate_history_tokens(
    messages: Sequence[Message],
    base_tokens: int = COMPACTION_BASE_TOKENS,
) -> int:
    return base_tokens + sum(estimate_tokens(m.get("content")) for m in messages if m)


@dataclass(frozen=True)
class CompactionCheck:
    """Outcome of sizing a history against a context limit."""

    should_compact: bool
    approx_tokens: int
    percent: float
    """Fraction of the context limit used (0.0-1.0+)."""


def should_compact(
    messages: Sequence[Message],
    context_limit: int,
    threshold: float = COMPACTION_THRESHOLD,
    base_tokens: int = COMPACTION_BASE_TOKENS,
) -> CompactionCheck:
    approx = estimate_history_tokens(messages, base_tokens)
    percent = approx / context_limit if context_limit > 0 else 0.0
    return CompactionCheck(
        should_compact=percent >= threshold,
        approx_tokens=approx,
        percent=percent,
    )


def build_summary_message(summary: str, trimmed_count: int) -> Message:
    """System message standing in for ``trimmed_count`` older messages."""
    return {
        "role": "system",
        "content": summary.strip(),
        "meta": {"kind": "summary", "summaryOfCount": trimmed_count, "source": "auto"},
    }


@dataclass(frozen=True)
class CompactionResult:
    compacted: list[Message]
    summary_message: Message
    trimmed_count: int
    preserved_count: int


def apply_compaction(
    summary_message: Message,
    preserved: Sequence[Message],
    trimmed_count: int,
) -> CompactionResult:
    return CompactionResult(
        compacted=[summary_message, *preserved],
        summary_message=summary_message,
        trimmed_count=trimmed_count,
        preserved_count=len(preserved),
    )


__all__ = [
    "CompactionCheck",
    "CompactionResult",
    "Message",
    "apply_compaction",
    "build_summary_message",
    "estimate_history_tokens",
    "estimate_tokens",
    "should_compact",
]
