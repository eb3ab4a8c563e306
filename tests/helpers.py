"""Shared test helpers for Cadence tests."""

from __future__ import annotations

from typing import Any

from cadence.protocol.messages import RuntimeMessageBase


class MessageRecorder:
    """Emitter sink that keeps every delivered message."""

    def __init__(self) -> None:
        self.messages: list[RuntimeMessageBase] = []

    def __call__(self, message: RuntimeMessageBase) -> None:
        self.messages.append(message)

    def types(self) -> list[str]:
        return [m.type for m in self.messages]  # type: ignore[attr-defined]

    def of_type(self, message_type: str) -> list[Any]:
        return [m for m in self.messages if m.type == message_type]  # type: ignore[attr-defined]


def wire(message_type: str, **fields: Any) -> dict[str, Any]:
    """A minimal wire-form message of ``message_type`` plus payload fields."""
    return {
        "schemaVersion": 2,
        "type": message_type,
        "runId": fields.pop("runId", "run-1"),
        "sessionId": fields.pop("sessionId", "session-1"),
        "timestamp": fields.pop("timestamp", 1_700_000_000_000),
        **fields,
    }
