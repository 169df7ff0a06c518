from collections import defaultdict

import pytest

from zeroloop.adaptation import PlanAdapter
from zeroloop.llm import ModelCallError
from zeroloop.plan_executor import PlanCancelledError, PlanExecutor, StepFailedError, StepQueue
from zeroloop.planner import build_plan
from zeroloop.schemas import ExecutionPlan, InvalidTransitionError, PlanStep
from zeroloop.synthesis import Synthesizer
from zeroloop.tools import ToolConfigurationError
from tests.fakes import FakeModelClient, FakeToolInvoker, failed_result, search_result, text_result


def make_executor(tools, model=None, adaptive=False, max_adaptive_steps=4):
    model = model or FakeModelClient()
    adapter = PlanAdapter(model) if adaptive else None
    return PlanExecutor(tools, Synthesizer(model), adapter=adapter, max_adaptive_steps=max_adaptive_steps)


def tool_step(step_id, description, tool="web-search"):
    return PlanStep(id=step_id, description=description, tool=tool, parameters={"query": description}, step_type="search")


class Recorder:
    def __init__(self, plan=None):
        self.plan = plan
        self.statuses = defaultdict(list)
        self.progress = []
        self.completed = []

    def on_step_update(self, step):
        self.statuses[step.id].append(step.status)
        if self.plan is not None:
            self.progress.append(self.plan.progress())

    def on_plan_complete(self, result):
        self.completed.append(result)


async def test_successful_plan_step_lifecycle_and_synthesis():
    plan = build_plan("comprehensive-search", "rust")
    tools = FakeToolInvoker(
        {"web-search": search_result(("A", "B")), "knowledge-search": search_result(("C", "D"))}
    )
    model = FakeModelClient(replies=["Synthesized answer"])
    recorder = Recorder(plan)

    result = await make_executor(tools, model).execute(
        plan, recorder.on_step_update, recorder.on_plan_complete, original_request="tell me about rust"
    )

    assert result == "Synthesized answer"
    assert plan.status == "completed"
    assert plan.final_result == "Synthesized answer"
    assert plan.error is None
    assert recorder.completed == ["Synthesized answer"]
    for step in plan.steps:
        assert recorder.statuses[step.id] == ["executing", "completed"]
        assert step.start_time is not None and step.end_time is not None
        assert step.start_time <= step.end_time
    assert plan.start_time <= plan.end_time
    assert plan.accumulated_content == ["A: B", "C: D"]
    assert plan.accumulated_findings["web-search"] == "A: B"
    assert "## Web Findings\nA: B" in plan.steps[2].extracted_content
    assert [call[0] for call in tools.calls] == ["web-search", "knowledge-search"]
    synthesis_call = model.calls[-1]
    assert synthesis_call["temperature"] == 0.4
    assert synthesis_call["max_tokens"] == 1200
    assert "tell me about rust" in synthesis_call["prompt"]


async def test_first_step_failure_aborts_plan():
    plan = build_plan("comprehensive-search", "rust")
    tools = FakeToolInvoker({"web-search": failed_result("HTTP 500: upstream down")})
    recorder = Recorder(plan)
    executor = make_executor(tools)

    with pytest.raises(StepFailedError) as excinfo:
        await executor.execute(plan, recorder.on_step_update, recorder.on_plan_complete)

    assert "upstream down" in str(excinfo.value)
    assert excinfo.value.step_id == plan.steps[0].id
    assert plan.status == "failed"
    assert plan.error and "upstream down" in plan.error
    assert plan.final_result is None
    assert plan.end_time is not None
    assert plan.steps[0].status == "failed"
    assert plan.steps[0].error == "HTTP 500: upstream down"
    assert [step.status for step in plan.steps[1:]] == ["pending", "pending"]
    assert all(step.start_time is None for step in plan.steps[1:])
    assert recorder.statuses[plan.steps[0].id] == ["executing", "failed"]
    assert recorder.completed == []
    assert len(tools.calls) == 1


async def test_synthesis_model_failure_falls_back_to_concatenation():
    plan = build_plan("comprehensive-search", "rust")
    tools = FakeToolInvoker({"web-search": text_result("web facts"), "knowledge-search": text_result("kb facts")})
    model = FakeModelClient(replies=[ModelCallError("proxy down", 503)])
    recorder = Recorder(plan)

    result = await make_executor(tools, model).execute(plan, recorder.on_step_update, recorder.on_plan_complete)

    assert plan.status == "completed"
    assert result == "Based on research findings:\n\nweb facts\n\nkb facts"
    assert plan.final_result == result
    assert recorder.completed == [result]


async def test_news_summary_keeps_sections_aligned_after_empty_search():
    plan = build_plan("news-search", "news")
    tools = FakeToolInvoker(
        {"web-search": [search_result(), text_result("TECH"), text_result("BIZ")]}
    )

    await make_executor(tools).execute(plan)

    summary = plan.steps[3].extracted_content
    assert "## Breaking News\nNo breaking news found" in summary
    assert "## Technology\nTECH" in summary
    assert "## Business\nBIZ" in summary
    assert plan.accumulated_content == ["TECH", "BIZ"]


async def test_empty_synthesis_reply_falls_back():
    plan = build_plan("single-step", "weather")
    tools = FakeToolInvoker({"web-search": text_result("sunny")})
    model = FakeModelClient(replies=["   "])
    result = await make_executor(tools, model).execute(plan)
    assert result == "Based on research findings:\n\nsunny"


async def test_progress_is_monotonic_and_idempotent():
    plan = build_plan("news-search", "news")
    recorder = Recorder(plan)
    executor = make_executor(FakeToolInvoker())

    assert executor.progress() == {"current": 0, "total": 0, "percentage": 0}
    await executor.execute(plan, recorder.on_step_update)

    currents = [p["current"] for p in recorder.progress]
    percentages = [p["percentage"] for p in recorder.progress]
    assert currents == sorted(currents)
    assert percentages == sorted(percentages)
    assert percentages[-1] == 100
    assert executor.progress() == executor.progress() == {"current": 4, "total": 4, "percentage": 100}


async def test_adaptive_steps_are_inserted_after_current_and_before_synthesis():
    plan = ExecutionPlan(
        id="p1",
        title="t",
        description="d",
        is_adaptive=True,
        steps=[
            tool_step("a", "Search alpha"),
            tool_step("b", "Search beta"),
            PlanStep(id="c", description="Organize", tool="synthesize-results", step_type="synthesis"),
        ],
    )
    adapted = []

    def handler(prompt):
        if '"needsAdaptation"' in prompt:
            if not adapted:
                adapted.append(True)
                return '{"needsAdaptation": true, "reasoning": "missing pricing"}'
            return '{"needsAdaptation": false, "reasoning": "enough"}'
        if '"queries"' in prompt:
            return 'Here: {"queries": ["pricing 2025", "pricing history"]}'
        return "final answer"

    tools = FakeToolInvoker()
    result = await make_executor(tools, FakeModelClient(handler=handler), adaptive=True).execute(
        plan, original_request="pricing"
    )

    assert result == "final answer"
    descriptions = [step.description for step in plan.steps]
    assert descriptions == [
        "Search alpha",
        "Search for: pricing 2025",
        "Search for: pricing history",
        "Search beta",
        "Organize",
    ]
    assert plan.steps[1].reasoning == "missing pricing"
    assert all(step.status == "completed" for step in plan.steps)
    assert [call[1]["query"] for call in tools.calls] == ["Search alpha", "pricing 2025", "pricing history", "Search beta"]
    assert plan.steps[0].reasoning == "Executing Search alpha to gather information for: pricing"


async def test_adaptive_insertion_respects_cap():
    plan = ExecutionPlan(
        id="p2",
        title="t",
        description="d",
        is_adaptive=True,
        steps=[tool_step("a", "Search alpha"), tool_step("b", "Search beta")],
    )

    def handler(prompt):
        if '"needsAdaptation"' in prompt:
            return '{"needsAdaptation": true, "reasoning": "more"}'
        if '"queries"' in prompt:
            return '{"queries": ["x", "y"]}'
        return "done"

    await make_executor(FakeToolInvoker(), FakeModelClient(handler=handler), adaptive=True, max_adaptive_steps=3).execute(plan)

    assert len(plan.steps) == 5
    assert plan.steps[-1].description == "Search beta"
    assert plan.status == "completed"


async def test_template_plans_never_adapt():
    plan = build_plan("comprehensive-search", "rust")
    model = FakeModelClient()
    await make_executor(FakeToolInvoker(), model, adaptive=True).execute(plan)
    assert len(plan.steps) == 3
    assert len(model.calls) == 1


async def test_adaptation_failure_keeps_plan_running():
    plan = ExecutionPlan(
        id="p3",
        title="t",
        description="d",
        is_adaptive=True,
        steps=[tool_step("a", "Search alpha"), tool_step("b", "Search beta")],
    )
    model = FakeModelClient(replies=[ModelCallError("down"), "final"])
    result = await make_executor(FakeToolInvoker(), model, adaptive=True).execute(plan)
    assert result == "final"
    assert len(plan.steps) == 2


async def test_cancel_stops_before_next_step():
    plan = build_plan("comprehensive-search", "rust")
    executor = make_executor(None)

    def cancel_during_first_call(tool, params):
        executor.cancel()

    executor.invoker = FakeToolInvoker(on_invoke=cancel_during_first_call)
    recorder = Recorder(plan)

    with pytest.raises(PlanCancelledError):
        await executor.execute(plan, recorder.on_step_update, recorder.on_plan_complete)

    assert plan.status == "failed"
    assert plan.error == "Plan cancelled"
    assert plan.steps[0].status == "completed"
    assert [step.status for step in plan.steps[1:]] == ["pending", "pending"]
    assert recorder.completed == []


def test_cancel_pending_plan_marks_failed():
    plan = build_plan("single-step", "weather")
    executor = make_executor(FakeToolInvoker())
    assert executor.cancel(plan) is True
    assert plan.status == "failed"
    assert plan.error == "Plan cancelled"
    assert executor.cancel(plan) is False


async def test_callback_errors_do_not_change_plan_state():
    plan = build_plan("single-step", "weather")

    def broken(_step):
        raise RuntimeError("ui went away")

    async def broken_complete(_result):
        raise RuntimeError("ui went away")

    result = await make_executor(FakeToolInvoker()).execute(plan, broken, broken_complete)
    assert plan.status == "completed"
    assert plan.final_result == result


async def test_async_callbacks_are_awaited():
    plan = build_plan("single-step", "weather")
    seen = []

    async def on_step(step):
        seen.append(step.status)

    async def on_complete(result):
        seen.append(result)

    await make_executor(FakeToolInvoker(), FakeModelClient(replies=["done"])).execute(plan, on_step, on_complete)
    assert seen == ["executing", "completed", "done"]


async def test_configuration_error_fails_step_and_plan():
    plan = build_plan("single-step", "weather")
    tools = FakeToolInvoker({"web-search": ToolConfigurationError("User not authenticated")})
    with pytest.raises(ToolConfigurationError):
        await make_executor(tools).execute(plan)
    assert plan.steps[0].status == "failed"
    assert plan.status == "failed"
    assert plan.error == "User not authenticated"


async def test_plan_cannot_run_twice():
    plan = build_plan("single-step", "weather")
    executor = make_executor(FakeToolInvoker())
    await executor.execute(plan)
    with pytest.raises(InvalidTransitionError):
        await executor.execute(plan)
    assert plan.status == "completed"


def test_step_transitions_are_enforced():
    step = tool_step("s", "Search")
    with pytest.raises(InvalidTransitionError):
        step.mark_completed(None, None)
    step.mark_executing()
    with pytest.raises(InvalidTransitionError):
        step.mark_executing()
    step.mark_failed("")
    assert step.error == "Tool execution failed"
    with pytest.raises(InvalidTransitionError):
        step.mark_completed(None, None)


def test_step_queue_inserts_after_cursor():
    steps = [tool_step("a", "A"), tool_step("b", "B")]
    queue = StepQueue(steps)
    assert queue.pop()[1].id == "a"
    position = queue.insert_next([tool_step("n", "N")])
    assert position == 1
    assert [s.id for s in steps] == ["a", "n", "b"]
    assert [s.id for s in queue.remaining()] == ["n", "b"]
    assert queue.pop() == (1, steps[1])
