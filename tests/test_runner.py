"""Tests for cadence.execution.runner.

Drives RunDriver with scripted model and tool capabilities and asserts on
the RuntimeMessage stream it produces, the retry bookkeeping and the
returned RunOutcome.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from cadence.core.config import CompactionConfig, RetryConfig, RuntimeConfig
from cadence.core.constants import (
    COMPACTION_SUMMARY_PROMPT,
    FALLBACK_FINAL_TEXT,
    FINALIZE_NUDGE_PROMPT,
    MAX_SUBAGENTS_PER_RUN,
)
from cadence.core.errors import RunCancelledError
from cadence.execution.plan import PlanStatus
from cadence.execution.retry_engine import RunPhase
from cadence.execution.runner import (
    ModelCaller,
    ModelDelta,
    ModelRequest,
    ModelResult,
    RunDriver,
    ToolExecutor,
)
from cadence.protocol.history import RunHistory
from cadence.protocol.messages import ManualPlanStep, ManualPlanUpdate


# ─── Fakes ────────────────────────────────────────────────────────────


class ScriptedModel:
    """ModelCaller that plays back a script, one step per generate() call.

    A step is a ModelResult, an exception to raise, or an async callable
    taking the request and returning a ModelResult.
    """

    def __init__(self, *steps: Any) -> None:
        self._steps = list(steps)
        self.requests: list[ModelRequest] = []

    def add(self, *steps: Any) -> None:
        self._steps.extend(steps)

    async def generate(self, request: ModelRequest) -> ModelResult:
        self.requests.append(request)
        step = self._steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step(request)
        return step


class AlwaysModel:
    """ModelCaller that answers every request with the same text."""

    def __init__(self, text: str = "ok") -> None:
        self.text = text
        self.requests: list[ModelRequest] = []

    async def generate(self, request: ModelRequest) -> ModelResult:
        self.requests.append(request)
        return ModelResult(text=self.text)


class FakeTools:
    """ToolExecutor with a queue of outcomes per tool name."""

    def __init__(self, **outcomes: list[Any]) -> None:
        self._outcomes = {name: list(values) for name, values in outcomes.items()}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(self, tool: str, args: dict[str, Any]) -> Any:
        self.calls.append((tool, args))
        queue = self._outcomes[tool]
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(args)
        return outcome


def _config(**overrides: Any) -> RuntimeConfig:
    return RuntimeConfig(**overrides)


@pytest.fixture
def make_driver(emitter, zero_backoff):
    def factory(model, tools=None, **config_overrides) -> RunDriver:
        return RunDriver(
            model,
            tools or FakeTools(),
            config=_config(**config_overrides),
            emitter=emitter,
            backoff=zero_backoff,
        )

    return factory


def _phases(recorder) -> list[str]:
    return [m.phase.value for m in recorder.of_type("run_status")]


# ─── Construction ─────────────────────────────────────────────────────


class TestConstruction:
    def test_fakes_satisfy_protocols(self):
        assert isinstance(ScriptedModel(), ModelCaller)
        assert isinstance(FakeTools(), ToolExecutor)

    def test_defaults_from_config(self):
        driver = RunDriver(AlwaysModel(), FakeTools())
        assert driver.run_id.startswith("run-")
        assert driver.engine.max_retries("api") == 3
        assert driver.engine.max_retries("tool") == 2
        assert driver.plan is None

    def test_sinks_build_an_emitter(self, recorder, zero_backoff):
        driver = RunDriver(AlwaysModel(), FakeTools(), sinks=[recorder], backoff=zero_backoff)
        driver.engine.set_phase(RunPhase.EXECUTING)
        assert recorder.types() == ["run_status"]
        assert recorder.messages[0].run_id == driver.run_id

    @pytest.mark.asyncio
    async def test_runs_once(self, make_driver):
        driver = make_driver(AlwaysModel())
        await driver.run("hi")
        with pytest.raises(RuntimeError):
            await driver.run("again")


# ─── Happy path ───────────────────────────────────────────────────────


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_streamed_message_sequence(self, make_driver, recorder):
        async def answer(request):
            request.on_delta(ModelDelta("Hel"))
            request.on_delta(ModelDelta("checking fares", "reasoning"))
            request.on_delta(ModelDelta("lo"))
            return ModelResult(
                text="Hello",
                thinking="checking fares",
                usage={"input_tokens": 12, "output_tokens": 3},
            )

        outcome = await make_driver(ScriptedModel(answer)).run("hi")

        assert recorder.types() == [
            "user_run_start",
            "run_status",
            "run_status",
            "assistant_stream_start",
            "assistant_stream_delta",
            "assistant_stream_delta",
            "assistant_stream_delta",
            "assistant_stream_stop",
            "run_status",
            "assistant_final",
            "run_status",
        ]
        assert _phases(recorder) == ["planning", "executing", "finalizing", "completed"]
        deltas = recorder.of_type("assistant_stream_delta")
        assert [(d.content, d.channel) for d in deltas] == [
            ("Hel", "text"),
            ("checking fares", "reasoning"),
            ("lo", "text"),
        ]

        final = recorder.of_type("assistant_final")[0]
        assert final.content == "Hello"
        assert final.thinking == "checking fares"
        assert final.usage.input_tokens == 12
        assert final.context_usage.context_limit == 200_000
        assert final.response_messages == [
            {"role": "assistant", "content": "Hello", "thinking": "checking fares"}
        ]

        assert outcome.success is True
        assert outcome.stopped is False
        assert outcome.phase is RunPhase.COMPLETED
        assert outcome.content == "Hello"
        assert outcome.usage == {"input_tokens": 12, "output_tokens": 3}
        assert outcome.history == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "Hello", "thinking": "checking fares"},
        ]

    @pytest.mark.asyncio
    async def test_unstreamed_run_has_no_stream_frames(self, make_driver, recorder):
        model = ScriptedModel(ModelResult(text="Done."))
        outcome = await make_driver(model, stream_responses=False).run("hi")
        assert outcome.success is True
        assert model.requests[0].on_delta is None
        assert not any(t.startswith("assistant_stream") for t in recorder.types())

    @pytest.mark.asyncio
    async def test_request_carries_history_and_capabilities(self, make_driver):
        model = ScriptedModel(ModelResult(text="Done."))
        driver = make_driver(model)
        prior = [{"role": "user", "content": "earlier"}]
        await driver.run("now", prior)
        request = model.requests[0]
        assert request.prompt == "now"
        assert request.history == prior
        assert request.signal is driver.token
        assert request.run_tool is not None

    @pytest.mark.asyncio
    async def test_stream_consumed_by_history(self, make_driver, emitter):
        history = RunHistory()
        emitter.add_sink(history)
        await make_driver(ScriptedModel(ModelResult(text="Done."))).run("hi")
        record = history.get("run-1")
        assert record.user_message == "hi"
        assert record.final_content == "Done."
        assert record.phase is RunPhase.COMPLETED
        assert history.rejected == 0


# ─── API retries ──────────────────────────────────────────────────────


class TestApiRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, make_driver, recorder):
        model = ScriptedModel(ConnectionError("503 Service Unavailable"), ModelResult(text="Done."))
        outcome = await make_driver(model).run("hi")

        assert outcome.success is True
        assert len(model.requests) == 2
        assert outcome.status.attempts["api"] == 1
        assert recorder.types().count("assistant_stream_start") == 2
        assert recorder.types().count("assistant_stream_stop") == 2
        retry_status = [s for s in recorder.of_type("run_status") if s.attempts.api == 1][0]
        assert retry_status.last_error == "503 Service Unavailable"
        assert retry_status.note == "model call failed (api)"

    @pytest.mark.asyncio
    async def test_exhaustion_fails_run(self, make_driver, recorder):
        model = ScriptedModel(
            ConnectionError("connection reset"), ConnectionError("connection reset")
        )
        driver = make_driver(model, retry=RetryConfig(max_api_retries=1))
        outcome = await driver.run("hi")

        assert len(model.requests) == 2
        assert outcome.success is False
        assert outcome.phase is RunPhase.FAILED
        assert outcome.content is None
        assert [e.message for e in recorder.of_type("run_error")] == ["connection reset"]
        assert recorder.of_type("assistant_final") == []
        final_status = recorder.of_type("run_status")[-1]
        assert final_status.phase is RunPhase.FAILED
        assert final_status.note == "model call retries exhausted"
        assert final_status.last_error == "connection reset"

    @pytest.mark.asyncio
    async def test_zero_retries(self, make_driver):
        model = ScriptedModel(TimeoutError("timeout"))
        outcome = await make_driver(model, retry=RetryConfig(max_api_retries=0)).run("hi")
        assert outcome.phase is RunPhase.FAILED
        assert len(model.requests) == 1


# ─── Finalize retries ─────────────────────────────────────────────────


class TestFinalize:
    @pytest.mark.asyncio
    async def test_rejected_answer_is_nudged(self, make_driver):
        first = ModelResult(
            text="Please try again.",
            response_messages=[{"role": "assistant", "content": "Please try again."}],
        )
        model = ScriptedModel(first, ModelResult(text="Booked the flight."))
        outcome = await make_driver(model).run("book it")

        assert outcome.success is True
        assert outcome.content == "Booked the flight."
        assert outcome.status.attempts["finalize"] == 1
        nudge = model.requests[1]
        assert nudge.prompt == FINALIZE_NUDGE_PROMPT
        assert nudge.history == [
            {"role": "user", "content": "book it"},
            {"role": "assistant", "content": "Please try again."},
        ]

    @pytest.mark.asyncio
    async def test_exhaustion_uses_fallback(self, make_driver, recorder):
        model = ScriptedModel(ModelResult(text=""), ModelResult(text="   "))
        driver = make_driver(model, retry=RetryConfig(max_finalize_retries=1))
        outcome = await driver.run("hi")

        assert len(model.requests) == 2
        assert outcome.success is False
        assert outcome.phase is RunPhase.FAILED
        assert outcome.content == FALLBACK_FINAL_TEXT
        assert len(recorder.of_type("run_warning")) == 1
        assert recorder.of_type("assistant_final")[0].content == FALLBACK_FINAL_TEXT
        assert recorder.types()[-3:] == ["run_warning", "assistant_final", "run_status"]
        assert recorder.of_type("run_status")[-1].last_error == "finalize retries exhausted"

    @pytest.mark.asyncio
    async def test_empty_answer_after_tool_calls_is_accepted(self, make_driver):
        model = ScriptedModel(ModelResult(text="", tool_calls=2))
        outcome = await make_driver(model).run("click the button")
        assert outcome.success is True
        assert outcome.content == ""
        assert len(model.requests) == 1

    @pytest.mark.asyncio
    async def test_custom_quit_phrases(self, emitter, zero_backoff):
        model = ScriptedModel(ModelResult(text="I give up"), ModelResult(text="Done."))
        driver = RunDriver(
            model,
            FakeTools(),
            emitter=emitter,
            backoff=zero_backoff,
            quit_phrases=["give up"],
        )
        outcome = await driver.run("hi")
        assert outcome.content == "Done."
        assert len(model.requests) == 2


# ─── Tools ────────────────────────────────────────────────────────────


class TestTools:
    @pytest.mark.asyncio
    async def test_tool_called_by_model(self, make_driver, recorder):
        tools = FakeTools(search=[{"hits": 3}])

        async def use_tool(request):
            result = await request.run_tool("search", {"q": "fares"}, "call-1")
            return ModelResult(text=f"found {result['hits']}", tool_calls=1)

        outcome = await make_driver(ScriptedModel(use_tool), tools).run("look")

        assert outcome.content == "found 3"
        assert tools.calls == [("search", {"q": "fares"})]
        start = recorder.of_type("tool_execution_start")[0]
        result = recorder.of_type("tool_execution_result")[0]
        assert (start.tool, start.id, start.args) == ("search", "call-1", {"q": "fares"})
        assert (result.id, result.result) == ("call-1", {"hits": 3})
        types = recorder.types()
        assert types.index("assistant_stream_start") < types.index("tool_execution_start")
        assert types.index("tool_execution_result") < types.index("assistant_stream_stop")

    @pytest.mark.asyncio
    async def test_failure_is_retried(self, make_driver):
        tools = FakeTools(fetch=[TimeoutError("timed out"), "page body"])
        driver = make_driver(AlwaysModel(), tools)
        assert await driver.execute_tool("fetch", {"url": "x"}) == "page body"
        assert len(tools.calls) == 2
        assert driver.engine.attempts("tool") == 1

    @pytest.mark.asyncio
    async def test_exhaustion_becomes_result(self, make_driver, recorder):
        tools = FakeTools(fill=[ValueError("invalid argument: selector")])
        driver = make_driver(AlwaysModel(), tools, retry=RetryConfig(max_tool_retries=1))

        result = await driver.execute_tool("fill", {"selector": "#"}, "call-7")

        expected = {
            "success": False,
            "error": "invalid argument: selector",
            "category": "validation",
        }
        assert result == expected
        assert len(tools.calls) == 2
        assert recorder.of_type("tool_execution_result")[0].result == expected
        assert driver.engine.phase is RunPhase.PLANNING

    @pytest.mark.asyncio
    async def test_budget_shared_across_tools(self, make_driver):
        tools = FakeTools(a=[RuntimeError("a broke"), 1], b=[RuntimeError("b broke")])
        driver = make_driver(AlwaysModel(), tools, retry=RetryConfig(max_tool_retries=1))
        assert await driver.execute_tool("a") == 1
        result = await driver.execute_tool("b")
        assert result["success"] is False
        assert driver.engine.attempts("tool") == 2

    @pytest.mark.asyncio
    async def test_none_result(self, make_driver):
        tools = FakeTools(noop=[None])
        result = await make_driver(AlwaysModel(), tools).execute_tool("noop")
        assert result == {"success": False, "error": "No result returned"}
        assert len(tools.calls) == 1

    @pytest.mark.asyncio
    async def test_generated_call_id(self, make_driver, recorder):
        await make_driver(AlwaysModel(), FakeTools(noop=["ok"])).execute_tool("noop")
        start = recorder.of_type("tool_execution_start")[0]
        result = recorder.of_type("tool_execution_result")[0]
        assert start.id.startswith("tool_")
        assert result.id == start.id


# ─── Cancellation ─────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_run(self, make_driver, recorder):
        model = AlwaysModel()
        driver = make_driver(model)
        assert driver.cancel("user pressed stop") is True
        assert driver.cancel("again") is False

        outcome = await driver.run("hi")

        assert model.requests == []
        assert outcome.stopped is True
        assert outcome.success is False
        assert outcome.phase is RunPhase.STOPPED
        assert recorder.of_type("run_warning")[0].message == "Run stopped: user pressed stop"
        assert _phases(recorder) == ["planning", "stopped"]

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_is_not_a_retry_failure(self, make_driver, recorder):
        model = ScriptedModel()
        driver = make_driver(model)

        async def cancel_then_fail(request):
            driver.cancel()
            raise ConnectionError("503")

        model.add(cancel_then_fail)
        outcome = await driver.run("hi")

        assert outcome.stopped is True
        assert len(model.requests) == 1
        assert outcome.status.attempts["api"] == 1
        assert recorder.of_type("run_error") == []
        assert recorder.of_type("run_warning")[0].message == "Run stopped: cancelled"
        assert recorder.types().count("assistant_stream_stop") == 1

    @pytest.mark.asyncio
    async def test_cancel_during_model_call(self, make_driver):
        model = ScriptedModel()
        driver = make_driver(model)

        async def cancel_and_answer(request):
            request.signal.cancel("closed tab")
            return ModelResult(text="Done.")

        model.add(cancel_and_answer)
        outcome = await driver.run("hi")
        assert outcome.stopped is True
        assert outcome.content is None

    @pytest.mark.asyncio
    async def test_cancelled_tool_reports_result(self, make_driver, recorder):
        driver = make_driver(AlwaysModel(), FakeTools())

        async def cancel_then_fail(args):
            driver.cancel("stop")
            raise RuntimeError("interrupted")

        driver._tools = FakeTools(slow=[cancel_then_fail])
        with pytest.raises(RunCancelledError):
            await driver.execute_tool("slow", {}, "call-1")
        result = recorder.of_type("tool_execution_result")[0]
        assert result.result == {"success": False, "error": "stop"}

    @pytest.mark.asyncio
    async def test_task_cancellation_marks_stopped(self, make_driver, recorder):
        started = asyncio.Event()

        async def hang(request):
            started.set()
            await asyncio.sleep(10)

        driver = make_driver(ScriptedModel(hang))
        task = asyncio.create_task(driver.run("hi"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert driver.engine.phase is RunPhase.STOPPED
        assert recorder.types().count("assistant_stream_stop") == 1


class TestUnexpectedErrors:
    @pytest.mark.asyncio
    async def test_reported_then_raised(self, make_driver, recorder):
        driver = make_driver(ScriptedModel("not a ModelResult"))
        with pytest.raises(AttributeError):
            await driver.run("hi")
        assert len(recorder.of_type("run_error")) == 1
        status = recorder.of_type("run_status")[-1]
        assert status.phase is RunPhase.FAILED
        assert status.note == "unexpected error"


# ─── Plan ─────────────────────────────────────────────────────────────


class TestPlan:
    def test_update_plan_broadcasts(self, make_driver, recorder):
        driver = make_driver(AlwaysModel())
        plan = driver.update_plan(["open page", {"title": "fill form"}, "  "])
        assert [s.title for s in plan.steps] == ["open page", "fill form"]
        sent = recorder.of_type("plan_update")
        assert len(sent) == 1
        assert [s.id for s in sent[0].plan.steps] == ["step-1", "step-2"]

    def test_step_mutations(self, make_driver, recorder):
        driver = make_driver(AlwaysModel())
        driver.update_plan(["a", "b", "c"])

        assert driver.mark_step_done(1) is False
        assert len(recorder.of_type("plan_update")) == 1

        assert driver.mark_step_done(0) is True
        assert driver.toggle_step(1) is True
        assert driver.set_step_status(2, "blocked", notes="captcha") is True
        assert driver.toggle_step(0) is True

        updates = recorder.of_type("plan_update")
        assert len(updates) == 5
        stamps = [u.plan.updated_at for u in updates]
        assert stamps == sorted(set(stamps))
        final = driver.plan
        assert [s.status for s in final.steps] == [
            PlanStatus.PENDING,
            PlanStatus.PENDING,
            PlanStatus.BLOCKED,
        ]
        assert final.steps[2].notes == "captcha"

    def test_out_of_range_step(self, make_driver, recorder):
        driver = make_driver(AlwaysModel())
        assert driver.mark_step_done(0) is False
        assert recorder.of_type("plan_update") == []

    def test_manual_plan_update(self, make_driver, recorder):
        driver = make_driver(AlwaysModel())
        edit = ManualPlanUpdate(
            run_id="run-1",
            session_id="session-1",
            timestamp=1,
            steps=[
                ManualPlanStep(title="a", status="done"),
                ManualPlanStep(title="b"),
                ManualPlanStep(title="c", status="done"),
            ],
        )
        plan = driver.apply_manual_plan(edit)
        assert [s.status for s in plan.steps] == [
            PlanStatus.DONE,
            PlanStatus.PENDING,
            PlanStatus.PENDING,
        ]
        assert len(recorder.of_type("plan_update")) == 1

    def test_plan_snapshot_is_a_copy(self, make_driver):
        driver = make_driver(AlwaysModel())
        driver.update_plan(["a"])
        snapshot = driver.plan
        snapshot.steps[0].status = PlanStatus.DONE
        assert driver.plan.steps[0].status == PlanStatus.PENDING


# ─── Sub-agents ───────────────────────────────────────────────────────


class TestSubagents:
    @pytest.mark.asyncio
    async def test_spawn_reports_start_and_complete(self, make_driver, recorder):
        model = ScriptedModel(ModelResult(text="Found three fares."))
        driver = make_driver(model)

        outcome = await driver.spawn_subagent("researcher", ["look up fares"])

        assert outcome.success is True
        assert model.requests[0].prompt == "look up fares"
        start = recorder.of_type("subagent_start")[0]
        complete = recorder.of_type("subagent_complete")[0]
        assert start.run_id == "run-1"
        assert start.id == outcome.run_id
        assert start.name == "researcher"
        assert start.tasks == ["look up fares"]
        assert start.parent_run_id == "run-1"
        assert complete.success is True
        assert complete.summary == "Found three fares."

        child_messages = [m for m in recorder.messages if m.run_id == outcome.run_id]
        assert child_messages[0].type == "user_run_start"
        assert all(m.session_id == "session-1" for m in child_messages)
        assert recorder.types()[-1] == "subagent_complete"

    @pytest.mark.asyncio
    async def test_child_has_own_engine(self, make_driver):
        model = ScriptedModel(ConnectionError("503"), ModelResult(text="ok"))
        driver = make_driver(model)
        outcome = await driver.spawn_subagent("worker", prompt="do it")
        assert outcome.status.attempts["api"] == 1
        assert driver.engine.attempts("api") == 0

    @pytest.mark.asyncio
    async def test_limit(self, make_driver):
        driver = make_driver(AlwaysModel())
        for i in range(MAX_SUBAGENTS_PER_RUN):
            await driver.spawn_subagent(f"worker-{i}")
        with pytest.raises(RuntimeError, match="limit"):
            await driver.spawn_subagent("one-too-many")

    @pytest.mark.asyncio
    async def test_parent_cancel_stops_child(self, make_driver, recorder):
        model = ScriptedModel()
        driver = make_driver(model)

        async def cancel_parent(request):
            driver.cancel("user stop")
            return ModelResult(text="partial")

        model.add(cancel_parent)
        outcome = await driver.spawn_subagent("worker", prompt="go")

        assert outcome.stopped is True
        complete = recorder.of_type("subagent_complete")[0]
        assert complete.success is False
        assert complete.summary is None

    @pytest.mark.asyncio
    async def test_child_crash_reported(self, make_driver, recorder):
        driver = make_driver(ScriptedModel("not a ModelResult"))
        with pytest.raises(AttributeError):
            await driver.spawn_subagent("worker", prompt="go")
        complete = recorder.of_type("subagent_complete")[0]
        assert complete.success is False

    @pytest.mark.asyncio
    async def test_driver_factory(self, make_driver, zero_backoff):
        other_model = AlwaysModel("from factory")
        driver = make_driver(AlwaysModel("from parent"))

        def factory(child_emitter):
            return RunDriver(other_model, FakeTools(), emitter=child_emitter, backoff=zero_backoff)

        outcome = await driver.spawn_subagent("worker", prompt="go", driver_factory=factory)
        assert outcome.content == "from factory"
        assert len(other_model.requests) == 1


# ─── Compaction ───────────────────────────────────────────────────────


def _small_context() -> CompactionConfig:
    return CompactionConfig(context_limit=100, base_tokens=0, threshold=0.5, preserve_max=2)


def _long_history(count: int) -> list[dict[str, Any]]:
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"{i}" * 40}
        for i in range(count)
    ]


class TestCompaction:
    @pytest.mark.asyncio
    async def test_compact_history(self, make_driver, recorder):
        calls = []

        async def summarize(messages, prompt):
            calls.append((len(messages), prompt))
            return "  - user wants fares\n"

        driver = make_driver(AlwaysModel(), compaction=_small_context())
        history = _long_history(6)
        compacted = await driver.compact_history(history, summarize)

        assert calls == [(6, COMPACTION_SUMMARY_PROMPT)]
        assert compacted[0]["role"] == "system"
        assert compacted[0]["content"] == "- user wants fares"
        assert compacted[0]["meta"]["summaryOfCount"] == 4
        assert compacted[1:] == history[-2:]

        event = recorder.of_type("context_compacted")[0]
        assert event.trimmed_count == 4
        assert event.preserved_count == 2
        assert event.new_session_id.startswith("session-")
        assert event.context_messages == compacted
        assert event.context_usage.approx_tokens == 60
        assert event.context_usage.percent == 60

    @pytest.mark.asyncio
    async def test_nothing_to_compact(self, make_driver, recorder):
        async def summarize(messages, prompt):
            raise AssertionError("summarizer should not be called")

        driver = make_driver(AlwaysModel(), compaction=_small_context())
        history = _long_history(2)
        assert await driver.compact_history(history, summarize) == history
        assert recorder.of_type("context_compacted") == []

    @pytest.mark.asyncio
    async def test_preserves_at_most_half(self, make_driver):
        async def summarize(messages, prompt):
            return "summary"

        config = CompactionConfig(context_limit=10, base_tokens=0, threshold=0.5, preserve_max=10)
        driver = make_driver(AlwaysModel(), compaction=config)
        compacted = await driver.compact_history(_long_history(3), summarize)
        assert len(compacted) == 2

    @pytest.mark.asyncio
    async def test_compaction_after_run(self, emitter, zero_backoff, recorder):
        async def summarize(messages, prompt):
            return "summary of earlier turns"

        driver = RunDriver(
            ScriptedModel(ModelResult(text="Done.")),
            FakeTools(),
            config=_config(compaction=_small_context()),
            emitter=emitter,
            backoff=zero_backoff,
            summarizer=summarize,
        )
        outcome = await driver.run("go", _long_history(6))

        types = recorder.types()
        assert types.index("assistant_final") < types.index("context_compacted")
        assert types[-1] == "run_status"
        assert outcome.success is True
        assert len(outcome.history) == 3
        assert outcome.history[0]["content"] == "summary of earlier turns"
        assert outcome.history[-1]["content"] == "Done."

    @pytest.mark.asyncio
    async def test_failed_compaction_keeps_history(self, emitter, zero_backoff, recorder):
        async def summarize(messages, prompt):
            raise RuntimeError("summarizer offline")

        driver = RunDriver(
            ScriptedModel(ModelResult(text="Done.")),
            FakeTools(),
            config=_config(compaction=_small_context()),
            emitter=emitter,
            backoff=zero_backoff,
            summarizer=summarize,
        )
        outcome = await driver.run("go", _long_history(6))

        assert outcome.success is True
        assert len(outcome.history) == 8
        assert recorder.of_type("run_warning")[0].message == "Compaction failed: summarizer offline"

    @pytest.mark.asyncio
    async def test_disabled(self, emitter, zero_backoff, recorder):
        async def summarize(messages, prompt):
            raise AssertionError("summarizer should not be called")

        config = CompactionConfig(
            enabled=False, context_limit=100, base_tokens=0, threshold=0.5, preserve_max=2
        )
        driver = RunDriver(
            ScriptedModel(ModelResult(text="Done.")),
            FakeTools(),
            config=_config(compaction=config),
            emitter=emitter,
            backoff=zero_backoff,
            summarizer=summarize,
        )
        outcome = await driver.run("go", _long_history(6))
        assert len(outcome.history) == 8
        assert recorder.of_type("context_compacted") == []
