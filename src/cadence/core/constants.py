"""Global constants for Cadence.

Centralizes magic numbers used throughout the codebase,
making them discoverable, consistent, and easy to modify.
"""

# =============================================================================
# Protocol
# =============================================================================

SCHEMA_VERSION = 2
"""Current RuntimeMessage schema generation. Other versions are rejected outright."""

# =============================================================================
# Backoff Defaults (milliseconds)
# =============================================================================

BACKOFF_BASE_MS = 500.0
"""Delay before the first retry."""

BACKOFF_MAX_MS = 8000.0
"""Cap applied before jitter."""

BACKOFF_JITTER = 0.2
"""Fraction of the capped delay that may be added or removed at random."""

# =============================================================================
# Retry Limits
# =============================================================================

DEFAULT_MAX_API_RETRIES = 3
"""Model-call retries permitted after the first attempt."""

DEFAULT_MAX_TOOL_RETRIES = 2
"""Tool-execution retries permitted after the first attempt."""

DEFAULT_MAX_FINALIZE_RETRIES = 2
"""Extra attempts at producing an acceptable final answer."""

# =============================================================================
# Plan
# =============================================================================

DEFAULT_MAX_PLAN_STEPS = 8
"""Plans are truncated to this many steps during normalization."""

# =============================================================================
# Context Compaction
# =============================================================================

COMPACTION_THRESHOLD = 0.85
"""Fraction of the context limit that triggers compaction."""

COMPACTION_BASE_TOKENS = 1200
"""Fixed overhead (system prompt, tool schemas) added to history estimates."""

COMPACTION_PRESERVE_MAX = 10
"""Most recent messages kept verbatim after compaction."""

DEFAULT_CONTEXT_LIMIT = 200_000
"""Context window assumed when the model profile does not specify one."""

CHARS_PER_TOKEN = 4
"""Rough character-to-token ratio for size estimates."""

COMPACTION_SUMMARY_PROMPT = (
    "Summarize the conversation so far for the next model run. Include: user goals, "
    "key context, decisions, tool outputs, open tasks, and constraints. Use bullet "
    "points. Keep it between 1,000 and 2,000 tokens."
)
"""Instruction handed to the summarizer when history is compacted."""

# =============================================================================
# Sub-agents
# =============================================================================

MAX_SUBAGENTS_PER_RUN = 10
"""A run refuses to spawn more sub-agents than this."""

# =============================================================================
# Final Response
# =============================================================================

DEFAULT_QUIT_PHRASES: tuple[str, ...] = (
    "please try again",
    "i could not produce a final summary",
    "i could not produce a final response",
    "unable to produce a final summary",
    "unable to provide a final response",
)
"""Phrases that mark a model answer as a give-up rather than a real summary."""

FALLBACK_FINAL_TEXT = (
    "I completed the requested actions but could not produce a final summary. "
    "Please try again."
)
"""Final text emitted when finalize retries are exhausted."""

FINALIZE_NUDGE_PROMPT = (
    "Summarize what you did and the result for the user. "
    "Do not ask them to try again."
)
"""Prompt used when asking the model again for an acceptable final answer."""
