import json

import pytest

from zeroloop.config import SettingsStore
from zeroloop.orchestrator import build_orchestrator
from zeroloop.schemas import PlanDetection
from tests.conftest import make_settings
from tests.fakes import FakeModelClient, FakeToolInvoker, text_result


def make_orchestrator(tmp_path, model=None, tools=None):
    model = model or FakeModelClient()
    tools = tools or FakeToolInvoker()
    orchestrator = build_orchestrator(SettingsStore(make_settings(tmp_path)), model, tools)
    return orchestrator, model, tools


def classification(**fields) -> str:
    body = {"shouldUsePlan": True, "confidence": 0.9, "reasoning": "needs research"}
    body.update(fields)
    return json.dumps(body)


@pytest.mark.asyncio
async def test_news_message_runs_template_plan(tmp_path):
    orchestrator, model, tools = make_orchestrator(tmp_path, FakeModelClient(replies=["Morning briefing"]))
    updates = []
    completed = []

    result = await orchestrator.handle_message(
        "What's today's news?",
        [],
        on_step_update=lambda step: updates.append(step.status),
        on_plan_complete=completed.append,
        use_model=False,
    )

    plan = orchestrator.current_plan
    assert result == "Morning briefing"
    assert completed == ["Morning briefing"]
    assert plan.plan_type == "news-search"
    assert plan.status == "completed"
    assert plan.is_adaptive is False
    assert [call[0] for call in tools.calls] == ["web-search"] * 3
    assert updates.count("completed") == 4
    assert orchestrator.get_progress() == {"current": 4, "total": 4, "percentage": 100}


@pytest.mark.asyncio
async def test_model_suggested_steps_build_adaptive_plan(tmp_path):
    model = FakeModelClient(
        replies=[
            classification(planType="travel-research", suggestedSteps=["Search flights to Lisbon", "Find hotels in Lisbon"]),
            '{"needsAdaptation": false, "reasoning": "enough"}',
            "Trip summary",
        ]
    )
    orchestrator, model, tools = make_orchestrator(tmp_path, model)

    result = await orchestrator.handle_message("Plan a weekend in Lisbon", [{"role": "user", "content": "hi"}])

    plan = orchestrator.current_plan
    assert result == "Trip summary"
    assert plan.is_adaptive is True
    assert plan.title == "AI-Generated Plan: travel-research"
    assert [step.description for step in plan.steps] == ["Search flights to Lisbon", "Find hotels in Lisbon"]
    assert [call[1] for call in tools.calls] == [{"query": "flights to Lisbon"}, {"query": "hotels in Lisbon"}]
    assert plan.steps[0].reasoning == "Executing Search flights to Lisbon to gather information for: Plan a weekend in Lisbon"
    assert len(model.calls) == 3


@pytest.mark.asyncio
async def test_message_without_plan_returns_none(tmp_path):
    orchestrator, model, tools = make_orchestrator(tmp_path)
    assert await orchestrator.handle_message("hello there", use_model=False) is None
    assert orchestrator.current_plan is None
    assert tools.calls == []
    assert model.calls == []


@pytest.mark.asyncio
async def test_model_repo_analysis_without_repository_runs_search(tmp_path):
    model = FakeModelClient(replies=[classification(planType="repo-analysis"), "Findings"])
    orchestrator, model, tools = make_orchestrator(tmp_path, model)

    result = await orchestrator.handle_message("analyze this codebase please", [])

    plan = orchestrator.current_plan
    assert result == "Findings"
    assert plan.status == "completed"
    assert plan.plan_type == "comprehensive-search"
    assert [call[0] for call in tools.calls] == ["web-search", "knowledge-search"]


@pytest.mark.asyncio
async def test_model_repo_analysis_takes_repository_from_history(tmp_path):
    model = FakeModelClient(replies=[classification(planType="repo-analysis"), "Repo summary"])
    tools = FakeToolInvoker({"github-tools": [text_result("meta"), text_result("tree"), text_result("deps")]})
    orchestrator, model, tools = make_orchestrator(tmp_path, model, tools)
    history = [{"role": "user", "content": "have a look at https://github.com/acme/widgets"}]

    result = await orchestrator.handle_message("explain the structure please", history)

    plan = orchestrator.current_plan
    assert result == "Repo summary"
    assert plan.plan_type == "repo-analysis"
    assert all(call[0] == "github-tools" for call in tools.calls)
    assert {call[1]["owner"] for call in tools.calls} == {"acme"}
    assert {call[1]["repository"] for call in tools.calls} == {"widgets"}
    assert "## Overview\nmeta" in plan.steps[-1].extracted_content


def test_github_detection_without_repository_falls_back_to_search(tmp_path):
    orchestrator, _, _ = make_orchestrator(tmp_path)
    detection = PlanDetection(should_use_plan=True, plan_type="github-commits", confidence=0.95)
    plan = orchestrator.plan_for_detection("show the latest commits", detection, [])
    assert plan.title == "Simple Query"
    assert plan.steps[0].tool == "web-search"
    assert orchestrator.current_plan is plan
