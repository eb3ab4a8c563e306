"""Retry, backoff, plan and compaction configuration models."""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from cadence.core.constants import (
    BACKOFF_BASE_MS,
    BACKOFF_JITTER,
    BACKOFF_MAX_MS,
    COMPACTION_BASE_TOKENS,
    COMPACTION_PRESERVE_MAX,
    COMPACTION_THRESHOLD,
    DEFAULT_CONTEXT_LIMIT,
    DEFAULT_MAX_API_RETRIES,
    DEFAULT_MAX_FINALIZE_RETRIES,
    DEFAULT_MAX_PLAN_STEPS,
    DEFAULT_MAX_TOOL_RETRIES,
)


def coerce_retry_limit(value: Any, default: int) -> int:
    """Coerce a configured retry limit instead of rejecting it.

    Negative values clamp to 0 and fractions are floored. Non-finite or
    non-numeric values (including bools) fall back to ``default``.
    """
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(0, math.floor(number))


class RetryConfig(BaseModel):
    """Per-category retry limits.

    Each limit is the number of retries permitted after the first attempt.
    Malformed values are coerced rather than raising.
    """

    max_api_retries: int = Field(
        default=DEFAULT_MAX_API_RETRIES, description="Model-call retries after the first try"
    )
    max_tool_retries: int = Field(
        default=DEFAULT_MAX_TOOL_RETRIES, description="Tool-execution retries after the first try"
    )
    max_finalize_retries: int = Field(
        default=DEFAULT_MAX_FINALIZE_RETRIES,
        description="Additional attempts at an acceptable final answer",
    )

    @field_validator("max_api_retries", mode="before")
    @classmethod
    def _coerce_api(cls, value: Any) -> int:
        return coerce_retry_limit(value, DEFAULT_MAX_API_RETRIES)

    @field_validator("max_tool_retries", mode="before")
    @classmethod
    def _coerce_tool(cls, value: Any) -> int:
        return coerce_retry_limit(value, DEFAULT_MAX_TOOL_RETRIES)

    @field_validator("max_finalize_retries", mode="before")
    @classmethod
    def _coerce_finalize(cls, value: Any) -> int:
        return coerce_retry_limit(value, DEFAULT_MAX_FINALIZE_RETRIES)


class BackoffConfig(BaseModel):
    """Exponential backoff with jitter. All times in milliseconds."""

    base_ms: float = Field(default=BACKOFF_BASE_MS, gt=0, description="Delay before first retry")
    max_ms: float = Field(default=BACKOFF_MAX_MS, gt=0, description="Cap applied before jitter")
    jitter: float = Field(
        default=BACKOFF_JITTER, ge=0, le=1, description="Random +/- fraction applied to the delay"
    )

    @model_validator(mode="after")
    def _validate_delay_range(self) -> BackoffConfig:
        if self.base_ms > self.max_ms:
            raise ValueError(
                f"base_ms ({self.base_ms}) must not exceed max_ms ({self.max_ms})"
            )
        return self


class PlanConfig(BaseModel):
    """Limits for the run plan checklist."""

    max_steps: int = Field(default=DEFAULT_MAX_PLAN_STEPS, ge=1, le=50)


class CompactionConfig(BaseModel):
    """When and how to compact conversation history after a run."""

    enabled: bool = Field(default=True, description="Check history size after each run")
    threshold: float = Field(
        default=COMPACTION_THRESHOLD, gt=0, le=1, description="Fraction of context limit"
    )
    base_tokens: int = Field(default=COMPACTION_BASE_TOKENS, ge=0)
    context_limit: int = Field(default=DEFAULT_CONTEXT_LIMIT, gt=0)
    preserve_max: int = Field(
        default=COMPACTION_PRESERVE_MAX, ge=1, description="Most recent messages kept verbatim"
    )


__all__ = [
    "BackoffConfig",
    "CompactionConfig",
    "PlanConfig",
    "RetryConfig",
    "coerce_retry_limit",
]
