"""Run-phase state machine and per-category retry policy.

One RetryPolicyEngine is created per run and discarded once the run reaches
a terminal phase. It tracks the coarse phase, counts retries per category
against fixed limits, waits out backoff delays (pre-emptible by a
cancellation signal), and reports a fresh RetryStatus snapshot to its
observer after every mutation.

The engine does not police phase adjacency: completed -> executing is
accepted like any other transition. Deciding which transitions make sense,
and when exhaustion escalates to failure, is the driver's job.

Example usage:
    engine = RetryPolicyEngine(max_api_retries=2, on_status=emitter.emit_status)
    engine.set_phase(RunPhase.EXECUTING)
    while True:
        try:
            result = await call_model()
            break
        except Exception as exc:
            if not engine.register_retry(RetryCategory.API, exc):
                engine.mark_failed("model unavailable", exc)
                raise
            await engine.wait(RetryCategory.API, token)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from cadence.core.config import BackoffConfig, RetryConfig, coerce_retry_limit
from cadence.core.constants import (
    DEFAULT_MAX_API_RETRIES,
    DEFAULT_MAX_FINALIZE_RETRIES,
    DEFAULT_MAX_TOOL_RETRIES,
)
from cadence.core.errors import RunCancelledError, error_message
from cadence.core.logging import get_logger
from cadence.execution.backoff import ExponentialBackoff, Rng

_logger = get_logger("retry_engine")


class RunPhase(str, Enum):
    """Coarse lifecycle stage of a run."""

    PLANNING = "planning"
    EXECUTING = "executing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PHASES


_TERMINAL_PHASES = frozenset({RunPhase.COMPLETED, RunPhase.STOPPED, RunPhase.FAILED})


class RetryCategory(str, Enum):
    """Bucket for retry bookkeeping. Independent of ErrorCategory."""

    API = "api"
    TOOL = "tool"
    FINALIZE = "finalize"


@dataclass(frozen=True)
class RetryStatus:
    """Point-in-time view of an engine. Maps are copies, never live state."""

    phase: RunPhase
    attempts: dict[str, int] = field(default_factory=dict)
    max_retries: dict[str, int] = field(default_factory=dict)
    last_error: str | None = None
    note: str | None = None

    def to_fields(self) -> dict[str, Any]:
        """Keyword fields for a run_status message."""
        return {
            "phase": self.phase.value,
            "attempts": dict(self.attempts),
            "max_retries": dict(self.max_retries),
            "last_error": self.last_error,
            "note": self.note,
        }


BackoffFn = Callable[[int, RetryCategory], float]
StatusCallback = Callable[[RetryStatus], Any]


@runtime_checkable
class CancellationSignal(Protocol):
    """Minimal cancellation capability: a flag plus a one-shot subscription."""

    @property
    def cancelled(self) -> bool: ...

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback fired once on cancellation; returns an unsubscriber."""
        ...


class CancellationToken:
    """In-process CancellationSignal.

    ``cancel()`` fires every subscriber exactly once. Subscribing after
    cancellation fires the callback immediately.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_key = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Trigger cancellation. Returns False if already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        callbacks = list(self._callbacks.values())
        self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                _logger.warning("cancellation.callback_error", exc_info=True)
        return True

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        if self._cancelled:
            callback()
            return lambda: None
        key = self._next_key
        self._next_key += 1
        self._callbacks[key] = callback

        def unsubscribe() -> None:
            self._callbacks.pop(key, None)

        return unsubscribe


def _backoff_from(exponential: ExponentialBackoff) -> BackoffFn:
    def backoff(attempt: int, category: RetryCategory) -> float:
        return exponential(attempt)

    return backoff


class RetryPolicyEngine:
    """Owns a run's phase and its per-category retry counters.

    ``max_retries = N`` permits exactly N retries after the first attempt:
    ``can_retry`` is checked before an attempt with ``attempts < max``,
    while ``register_retry`` increments first and reports
    ``attempts <= max``.

    Not safe for concurrent mutation from two tasks; one cooperative flow
    drives one engine.
    """

    def __init__(
        self,
        max_api_retries: Any = DEFAULT_MAX_API_RETRIES,
        max_tool_retries: Any = DEFAULT_MAX_TOOL_RETRIES,
        max_finalize_retries: Any = DEFAULT_MAX_FINALIZE_RETRIES,
        *,
        backoff: BackoffFn | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        self._max_retries: dict[RetryCategory, int] = {
            RetryCategory.API: coerce_retry_limit(max_api_retries, DEFAULT_MAX_API_RETRIES),
            RetryCategory.TOOL: coerce_retry_limit(max_tool_retries, DEFAULT_MAX_TOOL_RETRIES),
            RetryCategory.FINALIZE: coerce_retry_limit(
                max_finalize_retries, DEFAULT_MAX_FINALIZE_RETRIES
            ),
        }
        self._attempts: dict[RetryCategory, int] = {c: 0 for c in RetryCategory}
        self._phase = RunPhase.PLANNING
        self._last_error: str | None = None
        self._note: str | None = None
        self._backoff = backoff or _backoff_from(ExponentialBackoff())
        self._on_status = on_status

    @classmethod
    def from_config(
        cls,
        retry: RetryConfig,
        backoff: BackoffConfig | None = None,
        *,
        rng: Rng | None = None,
        on_status: StatusCallback | None = None,
    ) -> RetryPolicyEngine:
        """Build an engine from configuration models."""
        exponential = ExponentialBackoff.from_config(backoff or BackoffConfig(), rng)
        return cls(
            retry.max_api_retries,
            retry.max_tool_retries,
            retry.max_finalize_retries,
            backoff=_backoff_from(exponential),
            on_status=on_status,
        )

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def attempts(self, category: RetryCategory | str) -> int:
        return self._attempts[RetryCategory(category)]

    def max_retries(self, category: RetryCategory | str) -> int:
        return self._max_retries[RetryCategory(category)]

    def snapshot(self) -> RetryStatus:
        """Fresh snapshot; mutating it cannot touch engine state."""
        return RetryStatus(
            phase=self._phase,
            attempts={c.value: n for c, n in self._attempts.items()},
            max_retries={c.value: n for c, n in self._max_retries.items()},
            last_error=self._last_error,
            note=self._note,
        )

    def _broadcast(self) -> None:
        if self._on_status is not None:
            self._on_status(self.snapshot())

    # -------------------------------------------------------------------------
    # Phase transitions
    # -------------------------------------------------------------------------

    def set_phase(self, phase: RunPhase | str, note: str | None = None) -> None:
        """Move to ``phase``. Backward or post-terminal moves are allowed."""
        previous = self._phase
        self._phase = RunPhase(phase)
        self._note = note
        _logger.info(
            "retry_engine.phase_changed",
            previous=previous.value,
            phase=self._phase.value,
            note=note,
        )
        self._broadcast()

    def _terminal(self, phase: RunPhase, note: str | None, error: Any) -> None:
        if error is not None:
            self._last_error = error_message(error)
        self.set_phase(phase, note)

    def mark_completed(self, note: str | None = None, error: Any = None) -> None:
        self._terminal(RunPhase.COMPLETED, note, error)

    def mark_stopped(self, note: str | None = None, error: Any = None) -> None:
        self._terminal(RunPhase.STOPPED, note, error)

    def mark_failed(self, note: str | None = None, error: Any = None) -> None:
        """Move to FAILED. Without an explicit error the note becomes last_error."""
        if error is None and note:
            error = note
        self._terminal(RunPhase.FAILED, note, error)

    # -------------------------------------------------------------------------
    # Retry bookkeeping
    # -------------------------------------------------------------------------

    def can_retry(self, category: RetryCategory | str) -> bool:
        """Checked before an attempt: another retry is still within budget."""
        category = RetryCategory(category)
        return self._attempts[category] < self._max_retries[category]

    def register_retry(
        self,
        category: RetryCategory | str,
        error: Any,
        note: str | None = None,
    ) -> bool:
        """Count a failure in ``category``. Returns whether a retry is permitted."""
        category = RetryCategory(category)
        self._attempts[category] += 1
        self._last_error = error_message(error)
        self._note = note
        attempts = self._attempts[category]
        allowed = attempts <= self._max_retries[category]
        log = _logger.info if allowed else _logger.warning
        log(
            "retry_engine.retry_registered" if allowed else "retry_engine.retries_exhausted",
            category=category.value,
            attempts=attempts,
            max_retries=self._max_retries[category],
            error=self._last_error[:200],
        )
        self._broadcast()
        return allowed

    async def wait(
        self,
        category: RetryCategory | str,
        signal: CancellationSignal | None = None,
    ) -> float:
        """Sleep for the category's backoff delay.

        Returns the delay waited, in milliseconds.

        Raises:
            RunCancelledError: If ``signal`` is already triggered (no delay is
                computed and no timer started), or triggers mid-wait (the
                pending timer is released).
        """
        category = RetryCategory(category)
        if signal is not None and signal.cancelled:
            raise RunCancelledError(getattr(signal, "reason", None))

        delay_ms = max(0.0, float(self._backoff(max(1, self._attempts[category]), category)))
        _logger.debug("retry_engine.waiting", category=category.value, delay_ms=delay_ms)

        if signal is None:
            await asyncio.sleep(delay_ms / 1000)
            return delay_ms

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()

        def on_timeout() -> None:
            if not waiter.done():
                waiter.set_result(None)

        def on_cancel() -> None:
            if not waiter.done():
                waiter.set_exception(RunCancelledError(getattr(signal, "reason", None)))

        timer = loop.call_later(delay_ms / 1000, on_timeout)
        unsubscribe = signal.subscribe(on_cancel)
        try:
            await waiter
        finally:
            timer.cancel()
            unsubscribe()
        return delay_ms


__all__ = [
    "BackoffFn",
    "CancellationSignal",
    "CancellationToken",
    "RetryCategory",
    "RetryPolicyEngine",
    "RetryStatus",
    "RunPhase",
    "StatusCallback",
]
