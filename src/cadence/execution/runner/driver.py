"""RunDriver: drives one run through its phases and reports every change.

The driver wires a RetryPolicyEngine, a PlanTracker and a RuntimeEmitter
around two external capabilities, a ModelCaller and a ToolExecutor. It
decides which transitions happen and when exhausted retries escalate; the
engine only keeps the books.

Flow of ``run()``::

    user_run_start -> planning -> executing
        model call (api retries, stream framed start/stop)
    -> finalizing
        accept final text, or re-ask with a nudge (finalize retries)
    -> completed | failed | stopped

Cancellation is cooperative. ``cancel()`` triggers the run's token; the
next checkpoint or an in-progress backoff wait raises RunCancelledError,
which the driver turns into a run_warning plus the stopped phase. It never
counts as a retry.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from cadence.core.config import RuntimeConfig
from cadence.core.constants import (
    COMPACTION_SUMMARY_PROMPT,
    FALLBACK_FINAL_TEXT,
    FINALIZE_NUDGE_PROMPT,
    MAX_SUBAGENTS_PER_RUN,
)
from cadence.core.errors import ErrorClassifier, RunCancelledError, error_message
from cadence.core.logging import get_logger, with_run_context
from cadence.execution.backoff import Rng
from cadence.execution.compaction import (
    Message,
    apply_compaction,
    build_summary_message,
    should_compact,
)
from cadence.execution.final_response import is_valid_final_response
from cadence.execution.plan import PlanStatus, PlanTracker, RunPlan, now_ms
from cadence.execution.retry_engine import (
    BackoffFn,
    CancellationToken,
    RetryCategory,
    RetryPolicyEngine,
    RetryStatus,
    RunPhase,
)
from cadence.protocol.emitter import MessageSink, RunMeta, RuntimeEmitter
from cadence.protocol.messages import ManualPlanUpdate

from .models import (
    ModelCaller,
    ModelDelta,
    ModelRequest,
    ModelResult,
    RunOutcome,
    Summarizer,
    ToolExecutor,
)

_logger = get_logger("runner")

DriverFactory = Callable[[RuntimeEmitter], "RunDriver"]


class RunDriver:
    """Owns one run: its engine, plan, emitter and cancellation token.

    A driver drives a single run. Sub-agents get their own driver (and so
    their own engine) emitting onto the same sinks under a child run id.

    Args:
        model: Language-model capability.
        tools: Tool execution capability.
        config: Runtime configuration. Defaults to RuntimeConfig().
        meta: Correlation ids. A fresh RunMeta is minted when omitted.
        emitter: Pre-built emitter; overrides ``meta`` and ``sinks``.
        sinks: Message sinks for a new emitter.
        backoff: Backoff override (e.g. zero delay in tests).
        rng: Jitter source for the configured backoff.
        summarizer: Used for history compaction after a successful run.
        quit_phrases: Overrides the default give-up phrases.
    """

    def __init__(
        self,
        model: ModelCaller,
        tools: ToolExecutor,
        *,
        config: RuntimeConfig | None = None,
        meta: RunMeta | None = None,
        emitter: RuntimeEmitter | None = None,
        sinks: Iterable[MessageSink] = (),
        backoff: BackoffFn | None = None,
        rng: Rng | None = None,
        summarizer: Summarizer | None = None,
        quit_phrases: Sequence[str] | None = None,
    ) -> None:
        self._model = model
        self._tools = tools
        self._config = config or RuntimeConfig()
        self._emitter = emitter or RuntimeEmitter(meta or RunMeta.new(), *sinks)
        self._backoff = backoff
        self._rng = rng
        self._summarizer = summarizer
        self._quit_phrases = quit_phrases

        if backoff is not None:
            retry = self._config.retry
            self._engine = RetryPolicyEngine(
                retry.max_api_retries,
                retry.max_tool_retries,
                retry.max_finalize_retries,
                backoff=backoff,
                on_status=self._emitter.emit_status,
            )
        else:
            self._engine = RetryPolicyEngine.from_config(
                self._config.retry,
                self._config.backoff,
                rng=rng,
                on_status=self._emitter.emit_status,
            )
        self._plan = PlanTracker(self._config.plan.max_steps)
        self._token = CancellationToken()
        self._classifier = ErrorClassifier()
        self._subagent_count = 0
        self._started = False

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def meta(self) -> RunMeta:
        return self._emitter.meta

    @property
    def run_id(self) -> str:
        return self._emitter.meta.run_id

    @property
    def engine(self) -> RetryPolicyEngine:
        return self._engine

    @property
    def emitter(self) -> RuntimeEmitter:
        return self._emitter

    @property
    def plan(self) -> RunPlan | None:
        return self._plan.snapshot()

    @property
    def token(self) -> CancellationToken:
        return self._token

    def status(self) -> RetryStatus:
        return self._engine.snapshot()

    def cancel(self, reason: str | None = None) -> bool:
        """Request cooperative cancellation. Returns False if already cancelled."""
        triggered = self._token.cancel(reason)
        if triggered:
            _logger.info("runner.cancel_requested", run_id=self.run_id, reason=reason)
        return triggered

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self, message: str, history: Sequence[Message] | None = None) -> RunOutcome:
        """Drive the run to a terminal phase and return its outcome.

        Raises:
            RuntimeError: If this driver has already run.
        """
        if self._started:
            raise RuntimeError("A RunDriver drives a single run; create a new one")
        self._started = True
        prior = list(history or [])

        with with_run_context(self.meta.log_context()):
            _logger.info("runner.started", message_length=len(message), history=len(prior))
            self._emitter.emit("user_run_start", message=message)
            self._engine.set_phase(RunPhase.PLANNING, note="run started")
            try:
                return await self._drive(message, prior)
            except RunCancelledError as e:
                return self._stop(e.reason)
            except asyncio.CancelledError:
                self._engine.mark_stopped(note="task cancelled")
                raise
            except Exception as exc:
                _logger.exception("runner.unexpected_error", error=error_message(exc))
                self._emitter.emit("run_error", message=error_message(exc) or "Unknown error")
                self._engine.mark_failed(note="unexpected error", error=exc)
                raise

    async def _drive(self, message: str, prior: list[Message]) -> RunOutcome:
        self._check_cancelled()
        self._engine.set_phase(RunPhase.EXECUTING)
        result = await self._call_model(ModelRequest(prompt=message, history=list(prior)))
        if result is None:
            return self._outcome(content=None, success=False)

        self._check_cancelled()
        self._engine.set_phase(RunPhase.FINALIZING)
        allow_empty = result.tool_calls > 0
        conversation = [*prior, {"role": "user", "content": message}]

        while not is_valid_final_response(result.text, self._quit_phrases, allow_empty):
            allowed = self._engine.register_retry(
                RetryCategory.FINALIZE,
                "final response rejected",
                note="asking the model again for a final answer",
            )
            if not allowed:
                return self._finalize_exhausted(result)
            await self._engine.wait(RetryCategory.FINALIZE, self._token)
            nudge = ModelRequest(
                prompt=FINALIZE_NUDGE_PROMPT,
                history=[*conversation, *result.response_messages],
            )
            retried = await self._call_model(nudge)
            if retried is None:
                return self._outcome(content=None, success=False)
            result = retried

        return await self._complete(result, conversation)

    def _check_cancelled(self) -> None:
        if self._token.cancelled:
            raise RunCancelledError(self._token.reason)

    def _prepare(self, request: ModelRequest, streaming: bool) -> ModelRequest:
        request.signal = self._token
        request.run_tool = self.execute_tool
        if streaming:
            request.on_delta = self._emit_delta
        return request

    def _emit_delta(self, delta: ModelDelta) -> None:
        self._emitter.emit("assistant_stream_delta", content=delta.content, channel=delta.channel)

    async def _call_model(self, request: ModelRequest) -> ModelResult | None:
        """Call the model with api retries. None means retries were exhausted."""
        streaming = self._config.stream_responses
        request = self._prepare(request, streaming)
        while True:
            self._check_cancelled()
            if streaming:
                self._emitter.emit("assistant_stream_start")
            try:
                result = await self._model.generate(request)
            except RunCancelledError:
                raise
            except Exception as exc:
                failure = self._classifier.describe(exc)
                _logger.warning(
                    "runner.model_failed",
                    category=failure.category.value,
                    error=failure.message[:200],
                )
                allowed = self._engine.register_retry(
                    RetryCategory.API,
                    exc,
                    note=f"model call failed ({failure.category.value})",
                )
                if not allowed:
                    self._emitter.emit("run_error", message=failure.message or "Model call failed")
                    self._engine.mark_failed(note="model call retries exhausted", error=exc)
                    return None
                await self._engine.wait(RetryCategory.API, self._token)
                continue
            finally:
                if streaming:
                    self._emitter.emit("assistant_stream_stop")
            self._check_cancelled()
            return result

    def _finalize_exhausted(self, result: ModelResult) -> RunOutcome:
        _logger.warning("runner.finalize_exhausted", text=result.text[:200] if result.text else "")
        self._emitter.emit(
            "run_warning",
            message="Could not obtain an acceptable final response; using fallback text",
        )
        self._emitter.emit(
            "assistant_final",
            content=FALLBACK_FINAL_TEXT,
            thinking=result.thinking or None,
            usage=result.usage,
        )
        self._engine.mark_failed(note="finalize retries exhausted")
        return self._outcome(content=FALLBACK_FINAL_TEXT, success=False, usage=result.usage)

    async def _complete(self, result: ModelResult, conversation: list[Message]) -> RunOutcome:
        content = result.text or ""
        response_messages = result.response_messages or [
            {"role": "assistant", "content": content, "thinking": result.thinking or None}
        ]
        next_history = [*conversation, *response_messages]
        compaction = self._config.compaction
        check = should_compact(
            next_history, compaction.context_limit, compaction.threshold, compaction.base_tokens
        )
        self._emitter.emit(
            "assistant_final",
            content=content,
            thinking=result.thinking or None,
            usage=result.usage,
            context_usage={
                "approx_tokens": check.approx_tokens,
                "context_limit": compaction.context_limit,
                "percent": round(check.percent * 100),
            },
            response_messages=response_messages,
        )
        if compaction.enabled and self._summarizer is not None:
            next_history = await self._compact_after_run(next_history)
        self._engine.mark_completed(note="final response delivered")
        _logger.info("runner.completed", content_length=len(content))
        return self._outcome(content=content, success=True, history=next_history, usage=result.usage)

    async def _compact_after_run(self, history: list[Message]) -> list[Message]:
        assert self._summarizer is not None
        try:
            return await self.compact_history(history, self._summarizer)
        except RunCancelledError:
            raise
        except Exception as exc:
            # The answer is already delivered; keep the uncompacted history
            _logger.warning("runner.compaction_failed", error=error_message(exc))
            self._emitter.emit("run_warning", message=f"Compaction failed: {error_message(exc)}")
            return history

    def _stop(self, reason: str | None) -> RunOutcome:
        _logger.info("runner.stopped", reason=reason)
        self._emitter.emit("run_warning", message=f"Run stopped: {reason or 'cancelled'}")
        self._engine.mark_stopped(note=reason or "cancelled")
        return self._outcome(content=None, success=False, stopped=True)

    def _outcome(
        self,
        *,
        content: str | None,
        success: bool,
        stopped: bool = False,
        history: list[Message] | None = None,
        usage: dict[str, int] | None = None,
    ) -> RunOutcome:
        return RunOutcome(
            run_id=self.run_id,
            phase=self._engine.phase,
            content=content,
            success=success,
            stopped=stopped,
            status=self._engine.snapshot(),
            history=history or [],
            usage=usage,
        )

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    async def execute_tool(
        self,
        tool: str,
        args: dict[str, Any] | None = None,
        call_id: str | None = None,
    ) -> Any:
        """Run one tool with tool-category retries, reporting start and result.

        A raised failure is retried while the tool budget allows. Once it is
        exhausted the failure becomes the result:
        ``{"success": False, "error": ..., "category": ...}``.

        Raises:
            RunCancelledError: If the run is cancelled; a result is still emitted.
        """
        args = dict(args or {})
        call_id = call_id or f"tool_{now_ms()}_{uuid.uuid4().hex[:4]}"
        self._emitter.emit("tool_execution_start", tool=tool, id=call_id, args=args)
        try:
            result = await self._execute_with_retries(tool, args)
        except RunCancelledError as e:
            self._emitter.emit(
                "tool_execution_result",
                tool=tool,
                id=call_id,
                args=args,
                result={"success": False, "error": str(e)},
            )
            raise
        self._emitter.emit("tool_execution_result", tool=tool, id=call_id, args=args, result=result)
        return result

    async def _execute_with_retries(self, tool: str, args: dict[str, Any]) -> Any:
        while True:
            self._check_cancelled()
            try:
                result = await self._tools.execute(tool, args)
            except RunCancelledError:
                raise
            except Exception as exc:
                failure = self._classifier.describe(exc)
                _logger.warning(
                    "runner.tool_failed",
                    tool=tool,
                    category=failure.category.value,
                    error=failure.message[:200],
                )
                if not self._engine.register_retry(RetryCategory.TOOL, exc, note=f"{tool} failed"):
                    return {
                        "success": False,
                        "error": failure.message,
                        "category": failure.category.value,
                    }
                await self._engine.wait(RetryCategory.TOOL, self._token)
                continue
            if result is None:
                return {"success": False, "error": "No result returned"}
            return result

    # -------------------------------------------------------------------------
    # Plan
    # -------------------------------------------------------------------------

    def update_plan(self, raw: Any) -> RunPlan:
        """Replace the plan from model-supplied steps and broadcast it."""
        plan = self._plan.replace(raw)
        self._emitter.emit_plan(plan)
        return plan.model_copy(deep=True)

    def apply_manual_plan(self, steps: ManualPlanUpdate | Sequence[Any]) -> RunPlan:
        """Apply a plan edited on the control surface."""
        if isinstance(steps, ManualPlanUpdate):
            steps = steps.steps
        _logger.info("runner.manual_plan_applied", steps=len(steps))
        return self.update_plan(list(steps))

    def _plan_mutation(self, mutate: Callable[[], bool]) -> bool:
        before = self._plan.plan.updated_at if self._plan.plan is not None else None
        accepted = mutate()
        plan = self._plan.plan
        if accepted and plan is not None and plan.updated_at != before:
            self._emitter.emit_plan(plan)
        return accepted

    def mark_step_done(self, index: int) -> bool:
        """Mark a step done if every earlier step is; broadcasts on change."""
        return self._plan_mutation(lambda: self._plan.mark_done(index))

    def toggle_step(self, index: int) -> bool:
        return self._plan_mutation(lambda: self._plan.toggle(index))

    def set_step_status(
        self, index: int, status: PlanStatus | str, notes: str | None = None
    ) -> bool:
        return self._plan_mutation(lambda: self._plan.set_status(index, status, notes))

    # -------------------------------------------------------------------------
    # Sub-agents
    # -------------------------------------------------------------------------

    async def spawn_subagent(
        self,
        name: str,
        tasks: Sequence[str] | None = None,
        *,
        prompt: str | None = None,
        driver_factory: DriverFactory | None = None,
    ) -> RunOutcome:
        """Run a child driver under a child RunMeta and report its outcome.

        The child shares this driver's sinks, has its own engine and is
        cancelled together with this run.

        Raises:
            RuntimeError: If this run already spawned the maximum number of sub-agents.
        """
        if self._subagent_count >= MAX_SUBAGENTS_PER_RUN:
            raise RuntimeError(f"Sub-agent limit reached for this run (max {MAX_SUBAGENTS_PER_RUN})")
        self._subagent_count += 1
        task_list = list(tasks or [])
        child_emitter = self._emitter.with_meta(self.meta.child())
        child = driver_factory(child_emitter) if driver_factory else self._child_driver(child_emitter)
        child_id = child.run_id

        self._emitter.emit(
            "subagent_start",
            id=child_id,
            name=name,
            tasks=task_list or None,
            parent_run_id=self.run_id,
        )
        _logger.info("runner.subagent_started", subagent_id=child_id, name=name)
        unsubscribe = self._token.subscribe(lambda: child.cancel(self._token.reason))
        try:
            outcome = await child.run(prompt or "\n".join(task_list) or name)
        except Exception:
            self._emitter.emit(
                "subagent_complete", id=child_id, success=False, parent_run_id=self.run_id
            )
            raise
        finally:
            unsubscribe()
        self._emitter.emit(
            "subagent_complete",
            id=child_id,
            success=outcome.success,
            summary=outcome.content,
            parent_run_id=self.run_id,
        )
        _logger.info(
            "runner.subagent_completed",
            subagent_id=child_id,
            success=outcome.success,
            phase=outcome.phase.value,
        )
        return outcome

    def _child_driver(self, emitter: RuntimeEmitter) -> RunDriver:
        return RunDriver(
            self._model,
            self._tools,
            config=self._config,
            emitter=emitter,
            backoff=self._backoff,
            rng=self._rng,
            quit_phrases=self._quit_phrases,
        )

    # -------------------------------------------------------------------------
    # Compaction
    # -------------------------------------------------------------------------

    async def compact_history(
        self,
        history: Sequence[Message],
        summarize: Summarizer,
        context_limit: int | None = None,
    ) -> list[Message]:
        """Replace older history with a summary once it nears the context limit.

        Returns the history unchanged (as a new list) when no compaction is due.
        """
        settings = self._config.compaction
        limit = context_limit or settings.context_limit
        messages = list(history)
        check = should_compact(messages, limit, settings.threshold, settings.base_tokens)
        if not check.should_compact:
            return messages

        preserved_count = min(settings.preserve_max, len(messages) // 2)
        preserved = messages[len(messages) - preserved_count :]
        trimmed_count = len(messages) - preserved_count
        summary = await summarize(messages, COMPACTION_SUMMARY_PROMPT)
        result = apply_compaction(build_summary_message(summary, trimmed_count), preserved, trimmed_count)

        self._emitter.emit(
            "context_compacted",
            summary=summary,
            trimmed_count=trimmed_count,
            preserved_count=result.preserved_count,
            new_session_id=f"session-{now_ms()}",
            context_messages=result.compacted,
            context_usage={
                "approx_tokens": check.approx_tokens,
                "context_limit": limit,
                "percent": round(check.percent * 100),
            },
        )
        _logger.info(
            "runner.history_compacted",
            trimmed=trimmed_count,
            preserved=result.preserved_count,
            approx_tokens=check.approx_tokens,
        )
        return result.compacted


__all__ = ["DriverFactory", "RunDriver"]
