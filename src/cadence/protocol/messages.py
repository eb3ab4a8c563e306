"""RuntimeMessage wire protocol.

Defines Pydantic v2 models for every message a run emits to its observers.
All variants share one envelope (schemaVersion, runId, sessionId,
timestamp, optional turnId) and are distinguished by ``type``. Field names
are snake_case in Python and camelCase on the wire.

The variant set is closed. ``RUNTIME_MESSAGE_TYPES`` lists every tag, the
module refuses to import if the union and that list drift apart, and
``dispatch`` refuses handler maps that do not cover every tag.

``is_valid_message`` is the envelope gate every observer applies before
interpreting a raw value; it deliberately does not look at payload fields.
``parse_message`` additionally validates the payload against the variant.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Annotated, Any, Literal, TypeVar, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from cadence.core.constants import SCHEMA_VERSION
from cadence.core.errors import ProtocolValidationError, UnhandledMessageTypeError
from cadence.execution.plan import PlanStatus, RunPlan
from cadence.execution.retry_engine import RunPhase

RUNTIME_MESSAGE_TYPES: tuple[str, ...] = (
    "user_run_start",
    "assistant_stream_start",
    "assistant_stream_delta",
    "assistant_stream_stop",
    "tool_execution_start",
    "tool_execution_result",
    "plan_update",
    "manual_plan_update",
    "run_status",
    "assistant_response",
    "assistant_final",
    "run_error",
    "run_warning",
    "context_compacted",
    "subagent_start",
    "subagent_complete",
)

_WIRE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Envelope and shared payload types
# ---------------------------------------------------------------------------


class RuntimeMessageBase(BaseModel):
    """Envelope shared by every variant."""

    model_config = _WIRE_CONFIG

    schema_version: Literal[SCHEMA_VERSION] = SCHEMA_VERSION  # type: ignore[valid-type]
    run_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    timestamp: int | float
    turn_id: str | None = None


class _Payload(BaseModel):
    model_config = _WIRE_CONFIG


class RetryCounts(_Payload):
    api: int = 0
    tool: int = 0
    finalize: int = 0


class TokenUsage(_Payload):
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


class ContextUsage(_Payload):
    approx_tokens: int | None = None
    context_limit: int | None = None
    percent: float | None = None


class ManualPlanStep(_Payload):
    title: str
    status: PlanStatus | None = None
    notes: str | None = None


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


class UserRunStart(RuntimeMessageBase):
    type: Literal["user_run_start"] = "user_run_start"
    message: str


class AssistantStreamStart(RuntimeMessageBase):
    type: Literal["assistant_stream_start"] = "assistant_stream_start"


class AssistantStreamDelta(RuntimeMessageBase):
    type: Literal["assistant_stream_delta"] = "assistant_stream_delta"
    content: str
    channel: Literal["text", "reasoning"] | None = None


class AssistantStreamStop(RuntimeMessageBase):
    type: Literal["assistant_stream_stop"] = "assistant_stream_stop"


class ToolExecutionStart(RuntimeMessageBase):
    type: Literal["tool_execution_start"] = "tool_execution_start"
    tool: str
    id: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)


class ToolExecutionResult(RuntimeMessageBase):
    type: Literal["tool_execution_result"] = "tool_execution_result"
    tool: str
    id: str | None = None
    args: dict[str, Any] | None = None
    result: Any = None


class PlanUpdate(RuntimeMessageBase):
    type: Literal["plan_update"] = "plan_update"
    plan: RunPlan


class ManualPlanUpdate(RuntimeMessageBase):
    """A plan edited on the control surface, sent back to the driver."""

    type: Literal["manual_plan_update"] = "manual_plan_update"
    steps: list[ManualPlanStep]


class RunStatus(RuntimeMessageBase):
    type: Literal["run_status"] = "run_status"
    phase: RunPhase
    attempts: RetryCounts
    max_retries: RetryCounts
    last_error: str | None = None
    note: str | None = None


class AssistantResponse(RuntimeMessageBase):
    type: Literal["assistant_response"] = "assistant_response"
    content: str
    thinking: str | None = None


class AssistantFinal(RuntimeMessageBase):
    type: Literal["assistant_final"] = "assistant_final"
    content: str
    thinking: str | None = None
    usage: TokenUsage | None = None
    context_usage: ContextUsage | None = None
    response_messages: list[dict[str, Any]] | None = None


class RunError(RuntimeMessageBase):
    type: Literal["run_error"] = "run_error"
    message: str


class RunWarning(RuntimeMessageBase):
    type: Literal["run_warning"] = "run_warning"
    message: str


class ContextCompacted(RuntimeMessageBase):
    type: Literal["context_compacted"] = "context_compacted"
    summary: str
    trimmed_count: int
    preserved_count: int
    new_session_id: str
    context_messages: list[dict[str, Any]]
    context_usage: ContextUsage | None = None


class SubagentStart(RuntimeMessageBase):
    type: Literal["subagent_start"] = "subagent_start"
    id: str
    name: str
    tasks: list[str] | None = None
    parent_run_id: str | None = None


class SubagentComplete(RuntimeMessageBase):
    type: Literal["subagent_complete"] = "subagent_complete"
    id: str
    success: bool
    summary: str | None = None
    parent_run_id: str | None = None


RuntimeMessage = Annotated[
    Union[
        UserRunStart,
        AssistantStreamStart,
        AssistantStreamDelta,
        AssistantStreamStop,
        ToolExecutionStart,
        ToolExecutionResult,
        PlanUpdate,
        ManualPlanUpdate,
        RunStatus,
        AssistantResponse,
        AssistantFinal,
        RunError,
        RunWarning,
        ContextCompacted,
        SubagentStart,
        SubagentComplete,
    ],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter[RuntimeMessage] = TypeAdapter(RuntimeMessage)

MESSAGE_MODELS: dict[str, type[RuntimeMessageBase]] = {
    model.model_fields["type"].default: model for model in get_args(get_args(RuntimeMessage)[0])
}

if set(MESSAGE_MODELS) != set(RUNTIME_MESSAGE_TYPES) or len(MESSAGE_MODELS) != len(
    RUNTIME_MESSAGE_TYPES
):
    raise RuntimeError(
        "RuntimeMessage union and RUNTIME_MESSAGE_TYPES disagree: "
        f"{sorted(set(MESSAGE_MODELS) ^ set(RUNTIME_MESSAGE_TYPES))}"
    )


# ---------------------------------------------------------------------------
# Validation, construction, serialization
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _envelope(message: RuntimeMessageBase) -> dict[str, Any]:
    return {
        "schemaVersion": message.schema_version,
        "type": getattr(message, "type", None),
        "runId": message.run_id,
        "sessionId": message.session_id,
        "timestamp": message.timestamp,
    }


def is_valid_message(value: Any) -> bool:
    """Shallow envelope check applied before any payload is interpreted.

    Rejects non-mappings, any schemaVersion other than the current one,
    unknown ``type`` tags, missing or empty runId/sessionId, and
    non-numeric timestamps. Payload fields are not inspected.
    """
    if isinstance(value, RuntimeMessageBase):
        value = _envelope(value)
    if not isinstance(value, Mapping):
        return False
    version = value.get("schemaVersion")
    if not _is_number(version) or version != SCHEMA_VERSION:
        return False
    message_type = value.get("type")
    if not isinstance(message_type, str) or message_type not in MESSAGE_MODELS:
        return False
    if not _non_empty_str(value.get("runId")) or not _non_empty_str(value.get("sessionId")):
        return False
    return _is_number(value.get("timestamp"))


def parse_message(value: Any) -> RuntimeMessageBase:
    """Strictly parse a wire value into its variant model.

    Raises:
        ProtocolValidationError: If the envelope or the payload is invalid.
    """
    if isinstance(value, RuntimeMessageBase):
        return value
    if not is_valid_message(value):
        raise ProtocolValidationError("Invalid RuntimeMessage envelope", value)
    try:
        return _ADAPTER.validate_python(dict(value))
    except ValidationError as e:
        raise ProtocolValidationError(
            f"Invalid {value.get('type')} payload: {e.error_count()} error(s)", value
        ) from e


def build_message(message_type: str, **fields: Any) -> RuntimeMessageBase:
    """Construct a variant from snake_case fields, validating it fully.

    Raises:
        ProtocolValidationError: If the type is unknown or any field is invalid.
    """
    if message_type not in MESSAGE_MODELS:
        raise ProtocolValidationError(f"Unknown message type: {message_type!r}")
    try:
        return _ADAPTER.validate_python({**fields, "type": message_type})
    except ValidationError as e:
        raise ProtocolValidationError(
            f"Invalid {message_type} message: {e.error_count()} error(s)", fields
        ) from e


def _unset_nulls(model: BaseModel) -> dict[Any, Any]:
    exclude: dict[Any, Any] = {}
    for name in type(model).model_fields:
        value = getattr(model, name)
        if value is None:
            if name not in model.model_fields_set:
                exclude[name] = True
        elif isinstance(value, BaseModel):
            nested = _unset_nulls(value)
            if nested:
                exclude[name] = nested
        elif isinstance(value, list):
            items: dict[int, Any] = {}
            for i, item in enumerate(value):
                if isinstance(item, BaseModel):
                    nested = _unset_nulls(item)
                    if nested:
                        items[i] = nested
            if items:
                exclude[name] = items
    return exclude


def dump_message(message: RuntimeMessageBase) -> dict[str, Any]:
    """Wire form: camelCase keys, JSON-safe values.

    Optional fields left at their None default are omitted; a null the
    producer set explicitly is kept.
    """
    return message.model_dump(mode="json", by_alias=True, exclude=_unset_nulls(message))


# ---------------------------------------------------------------------------
# Exhaustive dispatch
# ---------------------------------------------------------------------------

T = TypeVar("T")
MessageHandler = Callable[[Any], T]


def require_exhaustive(handlers: Mapping[str, Callable[[Any], Any]]) -> None:
    """Raise unless ``handlers`` covers every RuntimeMessage type.

    Raises:
        UnhandledMessageTypeError: Listing the uncovered types.
    """
    missing = [t for t in RUNTIME_MESSAGE_TYPES if t not in handlers]
    if missing:
        raise UnhandledMessageTypeError(missing)


def dispatch(message: RuntimeMessageBase, handlers: Mapping[str, MessageHandler[T]]) -> T:
    """Route ``message`` to its handler; the map must be exhaustive."""
    require_exhaustive(handlers)
    return handlers[message.type](message)  # type: ignore[attr-defined]


__all__ = [
    "MESSAGE_MODELS",
    "RUNTIME_MESSAGE_TYPES",
    "AssistantFinal",
    "AssistantResponse",
    "AssistantStreamDelta",
    "AssistantStreamStart",
    "AssistantStreamStop",
    "ContextCompacted",
    "ContextUsage",
    "ManualPlanStep",
    "ManualPlanUpdate",
    "PlanUpdate",
    "RetryCounts",
    "RunError",
    "RunStatus",
    "RunWarning",
    "RuntimeMessage",
    "RuntimeMessageBase",
    "SubagentComplete",
    "SubagentStart",
    "TokenUsage",
    "ToolExecutionResult",
    "ToolExecutionStart",
    "UserRunStart",
    "build_message",
    "dispatch",
    "dump_message",
    "is_valid_message",
    "parse_message",
    "require_exhaustive",
]
