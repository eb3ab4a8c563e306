"""Data types and external capability protocols for RunDriver."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

from cadence.execution.compaction import Message
from cadence.execution.retry_engine import CancellationSignal, RetryStatus, RunPhase


@dataclass(frozen=True)
class ModelDelta:
    """One streamed fragment of model output."""

    content: str
    channel: Literal["text", "reasoning"] = "text"


DeltaCallback = Callable[[ModelDelta], None]
ToolRunner = Callable[[str, dict[str, Any], str | None], Awaitable[Any]]
Summarizer = Callable[[list[Message], str], Awaitable[str]]


@dataclass
class ModelRequest:
    """Everything a ModelCaller needs for one generation.

    Attributes:
        prompt: The user turn (or a nudge) to answer.
        history: Prior conversation, oldest first.
        on_delta: Set when responses are streamed; call it for each fragment.
        run_tool: Execute a tool through the driver so it is retried and reported.
        signal: The run's cancellation signal.
    """

    prompt: str
    history: list[Message] = field(default_factory=list)
    on_delta: DeltaCallback | None = None
    run_tool: ToolRunner | None = None
    signal: CancellationSignal | None = None


@dataclass
class ModelResult:
    text: str
    thinking: str | None = None
    usage: dict[str, int] | None = None
    response_messages: list[Message] = field(default_factory=list)
    tool_calls: int = 0


@runtime_checkable
class ModelCaller(Protocol):
    """Language-model invocation. Raises on transport or provider failure."""

    async def generate(self, request: ModelRequest) -> ModelResult: ...


@runtime_checkable
class ToolExecutor(Protocol):
    """Opaque action provider. Raises on failure; any return value is a result."""

    async def execute(self, tool: str, args: dict[str, Any]) -> Any: ...


@dataclass(frozen=True)
class RunOutcome:
    """How a run ended."""

    run_id: str
    phase: RunPhase
    content: str | None
    success: bool
    stopped: bool
    status: RetryStatus
    history: list[Message] = field(default_factory=list)
    usage: dict[str, int] | None = None


__all__ = [
    "DeltaCallback",
    "ModelCaller",
    "ModelDelta",
    "ModelRequest",
    "ModelResult",
    "RunOutcome",
    "Summarizer",
    "ToolExecutor",
    "ToolRunner",
]
