"""Envelope stamping and synchronous fan-out of RuntimeMessages.

RuntimeEmitter is the only place messages are constructed during a run. It
stamps the envelope from a RunMeta, validates the result against the
variant model, and hands the frozen message to each sink in order. A
message that fails validation is never delivered.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from cadence.core.logging import RunLogContext, get_logger
from cadence.execution.plan import RunPlan, now_ms
from cadence.execution.retry_engine import RetryStatus
from cadence.protocol.messages import RuntimeMessageBase, build_message

_logger = get_logger("emitter")

MessageSink = Callable[[RuntimeMessageBase], Any]
Clock = Callable[[], int]


def _short_id() -> str:
    return uuid.uuid4().hex[:6]


@dataclass(frozen=True)
class RunMeta:
    """Correlation ids stamped on every message of one run."""

    run_id: str
    session_id: str
    turn_id: str | None = None
    parent_run_id: str | None = None

    @classmethod
    def new(cls, session_id: str | None = None, *, now: int | None = None) -> RunMeta:
        """Fresh ids for a top-level run, optionally inside an existing session."""
        ms = now if now is not None else int(time.time() * 1000)
        return cls(
            run_id=f"run-{ms}-{_short_id()}",
            session_id=session_id or f"session-{ms}",
            turn_id=f"turn-{ms}-{_short_id()}",
        )

    def child(self, *, now: int | None = None) -> RunMeta:
        """Meta for a sub-agent: new run and turn ids, same session."""
        ms = now if now is not None else int(time.time() * 1000)
        return RunMeta(
            run_id=f"run-{ms}-{_short_id()}",
            session_id=self.session_id,
            turn_id=f"turn-{ms}-{_short_id()}",
            parent_run_id=self.run_id,
        )

    def with_session(self, session_id: str) -> RunMeta:
        return replace(self, session_id=session_id)

    def log_context(self, component: str = "runner") -> RunLogContext:
        return RunLogContext(
            run_id=self.run_id,
            session_id=self.session_id,
            turn_id=self.turn_id,
            component=component,
            parent_run_id=self.parent_run_id,
        )


class RuntimeEmitter:
    """Builds messages for one RunMeta and delivers them to sinks.

    Sinks are plain callables invoked synchronously in registration order.
    A sink that raises is logged and skipped; the others still receive the
    message.
    """

    def __init__(
        self,
        meta: RunMeta,
        *sinks: MessageSink,
        clock: Clock = now_ms,
    ) -> None:
        self._meta = meta
        self._sinks: list[MessageSink] = list(sinks)
        self._clock = clock

    @property
    def meta(self) -> RunMeta:
        return self._meta

    def add_sink(self, sink: MessageSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: MessageSink) -> bool:
        try:
            self._sinks.remove(sink)
        except ValueError:
            return False
        return True

    def with_meta(self, meta: RunMeta) -> RuntimeEmitter:
        """An emitter for another run sharing this one's sinks and clock."""
        return RuntimeEmitter(meta, *self._sinks, clock=self._clock)

    def emit(self, message_type: str, **fields: Any) -> RuntimeMessageBase:
        """Stamp, validate and deliver one message.

        Raises:
            ProtocolValidationError: If the message does not validate. Nothing
                is delivered in that case.
        """
        envelope = {
            "run_id": self._meta.run_id,
            "session_id": self._meta.session_id,
            "timestamp": self._clock(),
        }
        if self._meta.turn_id is not None:
            envelope["turn_id"] = self._meta.turn_id
        message = build_message(message_type, **{**fields, **envelope})
        _logger.debug("emitter.emitted", type=message_type, run_id=self._meta.run_id)
        for sink in list(self._sinks):
            try:
                sink(message)
            except Exception:
                _logger.warning(
                    "emitter.sink_error",
                    type=message_type,
                    sink=getattr(sink, "__qualname__", repr(sink)),
                    exc_info=True,
                )
        return message

    def emit_status(self, status: RetryStatus) -> RuntimeMessageBase:
        return self.emit("run_status", **status.to_fields())

    def emit_plan(self, plan: RunPlan) -> RuntimeMessageBase:
        # Deep copy so later tracker mutations never leak into sent messages
        return self.emit("plan_update", plan=plan.model_copy(deep=True))


__all__ = ["Clock", "MessageSink", "RunMeta", "RuntimeEmitter"]
