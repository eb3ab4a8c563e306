"""Execution layer for Cadence runs.

Contains backoff, the retry policy engine, the plan model and tracker,
final-answer acceptance and compaction helpers. The RunDriver lives in
``cadence.execution.runner`` and is imported from there directly, since it
depends on the protocol package which in turn depends on this one.
"""

from cadence.execution.backoff import ExponentialBackoff, create_exponential_backoff
from cadence.execution.compaction import (
    CompactionCheck,
    CompactionResult,
    apply_compaction,
    build_summary_message,
    estimate_history_tokens,
    estimate_tokens,
    should_compact,
)
from cadence.execution.final_response import is_valid_final_response
from cadence.execution.plan import (
    PlanStatus,
    PlanStep,
    PlanTracker,
    RunPlan,
    build_plan,
    incomplete_steps,
    is_complete,
    normalize_steps,
)
from cadence.execution.retry_engine import (
    CancellationSignal,
    CancellationToken,
    RetryCategory,
    RetryPolicyEngine,
    RetryStatus,
    RunPhase,
)

__all__ = [
    "CancellationSignal",
    "CancellationToken",
    "CompactionCheck",
    "CompactionResult",
    "ExponentialBackoff",
    "PlanStatus",
    "PlanStep",
    "PlanTracker",
    "RetryCategory",
    "RetryPolicyEngine",
    "RetryStatus",
    "RunPhase",
    "RunPlan",
    "apply_compaction",
    "build_plan",
    "build_summary_message",
    "create_exponential_backoff",
    "estimate_history_tokens",
    "estimate_tokens",
    "incomplete_steps",
    "is_complete",
    "is_valid_final_response",
    "normalize_steps",
    "should_compact",
]
