"""Run plan: a short ordered checklist with per-step status.

The model itself only normalizes and builds plans. The completion
invariant ("done" is always a prefix of the step list) is enforced by
PlanTracker, which the driver owns for the lifetime of one run.

Example usage:
    tracker = PlanTracker()
    tracker.replace(["Open page", "Fill form", {"title": "Submit", "status": "pending"}])
    tracker.mark_done(0)   # True
    tracker.mark_done(2)   # False - step 2 is not done yet
    tracker.unmark(0)      # step 0 back to pending; later done steps too
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cadence.core.constants import DEFAULT_MAX_PLAN_STEPS
from cadence.core.logging import get_logger

_logger = get_logger("plan")


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


class PlanStatus(str, Enum):
    """Lifecycle status of one plan step."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    BLOCKED = "blocked"


_WIRE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlanStep(BaseModel):
    """One checklist item. ``id`` is ``step-{n}`` and never renumbered."""

    model_config = _WIRE_CONFIG

    id: str
    title: str = Field(min_length=1)
    status: PlanStatus = PlanStatus.PENDING
    notes: str | None = None


class RunPlan(BaseModel):
    """Ordered plan steps plus creation and last-mutation times (epoch ms)."""

    model_config = _WIRE_CONFIG

    steps: list[PlanStep] = Field(default_factory=list)
    created_at: int
    updated_at: int


def normalize_status(value: Any) -> PlanStatus:
    """Map any value to a PlanStatus, clamping unknowns to PENDING."""
    if isinstance(value, PlanStatus):
        return value
    if not isinstance(value, str):
        return PlanStatus.PENDING
    try:
        return PlanStatus(value.strip().lower())
    except ValueError:
        return PlanStatus.PENDING


def _step_fields(raw: Any) -> tuple[str, PlanStatus, str | None]:
    if isinstance(raw, str):
        return raw.strip(), PlanStatus.PENDING, None
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if not isinstance(raw, Mapping):
        return "", PlanStatus.PENDING, None
    title = raw.get("title")
    notes = raw.get("notes")
    clean_notes = notes.strip() if isinstance(notes, str) and notes.strip() else None
    return (
        title.strip() if isinstance(title, str) else "",
        normalize_status(raw.get("status")),
        clean_notes,
    )


def normalize_steps(raw: Any, max_steps: int = DEFAULT_MAX_PLAN_STEPS) -> list[PlanStep]:
    """Normalize loosely shaped step input into PlanSteps.

    Accepts bare titles or step-like mappings. Entries whose trimmed title is
    empty are dropped, unknown statuses become pending, and the result is
    truncated to ``max_steps``. Ids are assigned sequentially; any id the
    caller supplied is ignored.
    """
    if not isinstance(raw, (list, tuple)):
        return []

    steps: list[PlanStep] = []
    for entry in raw:
        if len(steps) >= max_steps:
            break
        title, status, notes = _step_fields(entry)
        if not title:
            continue
        steps.append(
            PlanStep(id=f"step-{len(steps) + 1}", title=title, status=status, notes=notes)
        )
    return steps


def build_plan(
    raw: Any,
    existing_plan: RunPlan | None = None,
    now: int | None = None,
    max_steps: int = DEFAULT_MAX_PLAN_STEPS,
) -> RunPlan:
    """Build a new RunPlan, inheriting ``created_at`` from ``existing_plan``."""
    timestamp = now if now is not None else now_ms()
    created_at = existing_plan.created_at if existing_plan is not None else timestamp
    return RunPlan(
        steps=normalize_steps(raw, max_steps),
        created_at=created_at,
        updated_at=timestamp,
    )


def is_complete(plan: RunPlan | None) -> bool:
    """True when every step is done. An absent or empty plan counts as complete."""
    if plan is None:
        return True
    return all(step.status == PlanStatus.DONE for step in plan.steps)


def incomplete_steps(plan: RunPlan | None) -> list[str]:
    """Titles of steps that are not done, in plan order."""
    if plan is None:
        return []
    return [step.title for step in plan.steps if step.status != PlanStatus.DONE]


class PlanTracker:
    """Driver-side owner of one run's plan.

    Enforces the completion invariant: a step can become done only when
    every earlier step is done, and un-marking a step resets every later
    done step to pending. Refused mutations return False and change
    nothing. Every accepted mutation advances ``updated_at`` strictly.
    """

    def __init__(self, max_steps: int = DEFAULT_MAX_PLAN_STEPS) -> None:
        self._max_steps = max_steps
        self._plan: RunPlan | None = None

    @property
    def plan(self) -> RunPlan | None:
        return self._plan

    def snapshot(self) -> RunPlan | None:
        """Deep copy of the current plan, safe to hand to observers."""
        return self._plan.model_copy(deep=True) if self._plan is not None else None

    def replace(self, raw: Any, now: int | None = None) -> RunPlan:
        """Rebuild the plan from new input, keeping the original created_at."""
        timestamp = now if now is not None else now_ms()
        if self._plan is not None:
            timestamp = max(timestamp, self._plan.updated_at + 1)
        self._plan = build_plan(raw, self._plan, timestamp, self._max_steps)
        self._enforce_prefix()
        _logger.debug("plan.replaced", steps=len(self._plan.steps))
        return self._plan

    def _enforce_prefix(self) -> None:
        # Incoming plans may claim "done" out of order; keep only the done prefix
        assert self._plan is not None
        seen_gap = False
        for step in self._plan.steps:
            if step.status != PlanStatus.DONE:
                seen_gap = True
            elif seen_gap:
                step.status = PlanStatus.PENDING

    def _touch(self, now: int | None) -> None:
        assert self._plan is not None
        timestamp = now if now is not None else now_ms()
        self._plan.updated_at = max(timestamp, self._plan.updated_at + 1)

    def _step(self, index: int) -> PlanStep | None:
        if self._plan is None or not 0 <= index < len(self._plan.steps):
            return None
        return self._plan.steps[index]

    def _prior_done(self, index: int) -> bool:
        assert self._plan is not None
        return all(s.status == PlanStatus.DONE for s in self._plan.steps[:index])

    def mark_done(self, index: int, now: int | None = None) -> bool:
        """Mark a step done if every earlier step is done."""
        step = self._step(index)
        if step is None:
            return False
        if step.status == PlanStatus.DONE:
            return True
        if not self._prior_done(index):
            _logger.debug("plan.mark_done_refused", index=index)
            return False
        step.status = PlanStatus.DONE
        self._touch(now)
        return True

    def unmark(self, index: int, now: int | None = None) -> bool:
        """Reset a done step and every later done step to pending."""
        step = self._step(index)
        if step is None or step.status != PlanStatus.DONE:
            return False
        assert self._plan is not None
        for later in self._plan.steps[index:]:
            if later.status == PlanStatus.DONE:
                later.status = PlanStatus.PENDING
        self._touch(now)
        return True

    def toggle(self, index: int, now: int | None = None) -> bool:
        """Flip a step between done and not done, honouring the invariant."""
        step = self._step(index)
        if step is None:
            return False
        if step.status == PlanStatus.DONE:
            return self.unmark(index, now)
        return self.mark_done(index, now)

    def set_status(
        self,
        index: int,
        status: PlanStatus | str,
        notes: str | None = None,
        now: int | None = None,
    ) -> bool:
        """Set any status on a step; notes are replaced when given."""
        step = self._step(index)
        if step is None:
            return False
        target = normalize_status(status)
        if target == PlanStatus.DONE:
            if not self.mark_done(index, now):
                return False
        elif step.status == PlanStatus.DONE:
            self.unmark(index, now)
            step.status = target
        else:
            step.status = target
            self._touch(now)
        if notes is not None:
            step.notes = notes.strip() or None
            self._touch(now)
        return True

    @property
    def is_complete(self) -> bool:
        return is_complete(self._plan)

    def incomplete_steps(self) -> list[str]:
        return incomplete_steps(self._plan)


__all__ = [
    "PlanStatus",
    "PlanStep",
    "PlanTracker",
    "RunPlan",
    "build_plan",
    "incomplete_steps",
    "is_complete",
    "normalize_status",
    "normalize_steps",
    "now_ms",
]
