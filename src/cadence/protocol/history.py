"""History-store observer: folds a RuntimeMessage stream into run summaries.

RunHistory is a consumer like any other observer. It applies the envelope
gate first, then strictly parses, then routes each message through an
exhaustive handler map. Anything that fails either check is counted in
``rejected`` and otherwise ignored, so a bad line in a capture never
stops a replay.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cadence.core.errors import ProtocolValidationError
from cadence.core.logging import get_logger
from cadence.execution.plan import PlanStatus, RunPlan
from cadence.execution.retry_engine import RunPhase
from cadence.protocol.messages import (
    AssistantFinal,
    AssistantResponse,
    AssistantStreamDelta,
    AssistantStreamStart,
    AssistantStreamStop,
    ContextCompacted,
    ManualPlanUpdate,
    PlanUpdate,
    RunError,
    RunStatus,
    RuntimeMessageBase,
    RunWarning,
    SubagentComplete,
    SubagentStart,
    ToolExecutionResult,
    ToolExecutionStart,
    UserRunStart,
    dispatch,
    is_valid_message,
    parse_message,
    require_exhaustive,
)

_logger = get_logger("history")


@dataclass
class ToolCallRecord:
    """One tool invocation, start paired with its result."""

    id: str
    tool: str
    args: dict[str, Any] = field(default_factory=dict)
    status: str = "running"
    started_at: float | None = None
    completed_at: float | None = None
    result: Any = None

    @property
    def duration_ms(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at


@dataclass
class SubagentRecord:
    id: str
    name: str
    tasks: list[str] = field(default_factory=list)
    success: bool | None = None
    summary: str | None = None


@dataclass
class RunRecord:
    """Everything the history store keeps about one run."""

    run_id: str
    session_id: str
    turn_ids: list[str] = field(default_factory=list)
    parent_run_id: str | None = None
    user_message: str | None = None
    phase: RunPhase | None = None
    attempts: dict[str, int] = field(default_factory=dict)
    max_retries: dict[str, int] = field(default_factory=dict)
    last_error: str | None = None
    note: str | None = None
    plan: RunPlan | None = None
    manual_plan_edits: int = 0
    tool_calls: dict[str, ToolCallRecord] = field(default_factory=dict)
    streaming: bool = False
    stream_text: str = ""
    reasoning_text: str = ""
    responses: list[str] = field(default_factory=list)
    final_content: str | None = None
    final_thinking: str | None = None
    usage: dict[str, int] | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    subagents: dict[str, SubagentRecord] = field(default_factory=dict)
    compactions: int = 0
    last_summary: str | None = None
    message_count: int = 0
    first_timestamp: float | None = None
    last_timestamp: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase is not None and self.phase.is_terminal

    @property
    def plan_progress(self) -> tuple[int, int]:
        """(done, total) steps of the latest plan."""
        if self.plan is None:
            return 0, 0
        done = sum(1 for s in self.plan.steps if s.status == PlanStatus.DONE)
        return done, len(self.plan.steps)

    def to_dict(self) -> dict[str, Any]:
        done, total = self.plan_progress
        return {
            "runId": self.run_id,
            "sessionId": self.session_id,
            "parentRunId": self.parent_run_id,
            "phase": self.phase.value if self.phase else None,
            "attempts": dict(self.attempts),
            "maxRetries": dict(self.max_retries),
            "lastError": self.last_error,
            "plan": {"done": done, "total": total},
            "toolCalls": [
                {"id": c.id, "tool": c.tool, "status": c.status, "durationMs": c.duration_ms}
                for c in self.tool_calls.values()
            ],
            "finalContent": self.final_content,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "subagents": sorted(self.subagents),
            "compactions": self.compactions,
            "messageCount": self.message_count,
        }


def _is_tool_failure(result: Any) -> bool:
    if isinstance(result, dict):
        return result.get("success") is False or bool(result.get("error"))
    return False


class RunHistory:
    """Per-run summaries built from any interleaving of run streams."""

    def __init__(self) -> None:
        self._records: dict[str, RunRecord] = {}
        self.rejected = 0
        self._handlers: dict[str, Callable[[Any], None]] = {
            "user_run_start": self._on_user_run_start,
            "assistant_stream_start": self._on_stream_start,
            "assistant_stream_delta": self._on_stream_delta,
            "assistant_stream_stop": self._on_stream_stop,
            "tool_execution_start": self._on_tool_start,
            "tool_execution_result": self._on_tool_result,
            "plan_update": self._on_plan_update,
            "manual_plan_update": self._on_manual_plan_update,
            "run_status": self._on_run_status,
            "assistant_response": self._on_assistant_response,
            "assistant_final": self._on_assistant_final,
            "run_error": self._on_run_error,
            "run_warning": self._on_run_warning,
            "context_compacted": self._on_context_compacted,
            "subagent_start": self._on_subagent_start,
            "subagent_complete": self._on_subagent_complete,
        }
        require_exhaustive(self._handlers)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._records

    def get(self, run_id: str) -> RunRecord | None:
        return self._records.get(run_id)

    def runs(self) -> list[RunRecord]:
        """Records in first-seen order."""
        return list(self._records.values())

    def __call__(self, message: Any) -> RunRecord | None:
        return self.consume(message)

    def consume(self, value: Any) -> RunRecord | None:
        """Fold one message (model or wire dict) into its run's record.

        Returns the updated record, or None if the value was rejected.
        """
        if not is_valid_message(value):
            self.rejected += 1
            _logger.debug("history.rejected", reason="envelope")
            return None
        try:
            message = parse_message(value)
        except ProtocolValidationError as e:
            self.rejected += 1
            _logger.debug("history.rejected", reason="payload", error=str(e))
            return None

        record = self._record(message)
        record.message_count += 1
        if record.first_timestamp is None:
            record.first_timestamp = message.timestamp
        record.last_timestamp = message.timestamp
        if message.turn_id and message.turn_id not in record.turn_ids:
            record.turn_ids.append(message.turn_id)
        dispatch(message, self._handlers)
        return record

    def consume_all(self, values: Iterable[Any]) -> int:
        """Consume many messages; returns how many were accepted."""
        return sum(1 for value in values if self.consume(value) is not None)

    def _record(self, message: RuntimeMessageBase) -> RunRecord:
        record = self._records.get(message.run_id)
        if record is None:
            record = RunRecord(run_id=message.run_id, session_id=message.session_id)
            self._records[message.run_id] = record
        return record

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _on_user_run_start(self, msg: UserRunStart) -> None:
        self._records[msg.run_id].user_message = msg.message

    def _on_stream_start(self, msg: AssistantStreamStart) -> None:
        record = self._records[msg.run_id]
        record.streaming = True
        record.stream_text = ""
        record.reasoning_text = ""

    def _on_stream_delta(self, msg: AssistantStreamDelta) -> None:
        record = self._records[msg.run_id]
        if msg.channel == "reasoning":
            record.reasoning_text += msg.content
        else:
            record.stream_text += msg.content

    def _on_stream_stop(self, msg: AssistantStreamStop) -> None:
        self._records[msg.run_id].streaming = False

    def _on_tool_start(self, msg: ToolExecutionStart) -> None:
        record = self._records[msg.run_id]
        call_id = msg.id or f"{msg.tool}-{len(record.tool_calls) + 1}"
        record.tool_calls[call_id] = ToolCallRecord(
            id=call_id,
            tool=msg.tool,
            args=dict(msg.args),
            started_at=msg.timestamp,
        )

    def _on_tool_result(self, msg: ToolExecutionResult) -> None:
        record = self._records[msg.run_id]
        call = record.tool_calls.get(msg.id) if msg.id else None
        if call is None:
            # Unkeyed result: pair with the oldest running call of that tool
            call = next(
                (
                    c
                    for c in record.tool_calls.values()
                    if c.tool == msg.tool and c.status == "running"
                ),
                None,
            )
        if call is None:
            call_id = msg.id or f"{msg.tool}-{len(record.tool_calls) + 1}"
            call = ToolCallRecord(id=call_id, tool=msg.tool, args=dict(msg.args or {}))
            record.tool_calls[call_id] = call
        call.result = msg.result
        call.completed_at = msg.timestamp
        call.status = "error" if _is_tool_failure(msg.result) else "success"

    def _on_plan_update(self, msg: PlanUpdate) -> None:
        self._records[msg.run_id].plan = msg.plan

    def _on_manual_plan_update(self, msg: ManualPlanUpdate) -> None:
        self._records[msg.run_id].manual_plan_edits += 1

    def _on_run_status(self, msg: RunStatus) -> None:
        record = self._records[msg.run_id]
        record.phase = msg.phase
        record.attempts = msg.attempts.model_dump()
        record.max_retries = msg.max_retries.model_dump()
        record.last_error = msg.last_error
        record.note = msg.note

    def _on_assistant_response(self, msg: AssistantResponse) -> None:
        self._records[msg.run_id].responses.append(msg.content)

    def _on_assistant_final(self, msg: AssistantFinal) -> None:
        record = self._records[msg.run_id]
        record.final_content = msg.content
        record.final_thinking = msg.thinking
        if msg.usage is not None:
            record.usage = msg.usage.model_dump(exclude_none=True)

    def _on_run_error(self, msg: RunError) -> None:
        self._records[msg.run_id].errors.append(msg.message)

    def _on_run_warning(self, msg: RunWarning) -> None:
        self._records[msg.run_id].warnings.append(msg.message)

    def _on_context_compacted(self, msg: ContextCompacted) -> None:
        record = self._records[msg.run_id]
        record.compactions += 1
        record.last_summary = msg.summary

    def _on_subagent_start(self, msg: SubagentStart) -> None:
        record = self._records[msg.run_id]
        record.subagents[msg.id] = SubagentRecord(
            id=msg.id, name=msg.name, tasks=list(msg.tasks or [])
        )
        child = self._records.get(msg.id)
        if child is not None and child.parent_run_id is None:
            child.parent_run_id = msg.run_id

    def _on_subagent_complete(self, msg: SubagentComplete) -> None:
        record = self._records[msg.run_id]
        sub = record.subagents.get(msg.id)
        if sub is None:
            sub = SubagentRecord(id=msg.id, name=msg.id)
            record.subagents[msg.id] = sub
        sub.success = msg.success
        sub.summary = msg.summary
        child = self._records.get(msg.id)
        if child is not None and child.parent_run_id is None:
            child.parent_run_id = msg.run_id


def load_ndjson(path: Path | str, history: RunHistory | None = None) -> RunHistory:
    """Replay an NDJSON capture (one wire message per line) into a RunHistory.

    Blank lines are skipped. Lines that are not JSON count as rejected.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """
    history = history if history is not None else RunHistory()
    with Path(path).open(encoding="utf-8") as fh:
        for line_number, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError:
                history.rejected += 1
                _logger.warning("history.bad_json", path=str(path), line=line_number)
                continue
            history.consume(value)
    return history


__all__ = ["RunHistory", "RunRecord", "SubagentRecord", "ToolCallRecord", "load_ndjson"]
