import json

import respx
from httpx import Response

import zeroloop_cli


BASE = "http://zeroloop.test"


def test_detect_prints_verdict(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        route = respx_mock.post(f"{BASE}/api/detect").mock(
            return_value=Response(
                200,
                json={
                    "detection": {
                        "should_use_plan": True,
                        "plan_type": "news-search",
                        "confidence": 0.9,
                        "reasoning": "News request detected",
                        "suggested_steps": [],
                    }
                },
            )
        )
        code = zeroloop_cli.main(["--base-url", BASE, "detect", "today's news", "--model"])

    assert code == 0
    body = json.loads(route.calls.last.request.content.decode("utf-8"))
    assert body == {"message": "today's news", "use_model": True}
    out = capsys.readouterr().out
    assert "plan: news-search (0.9)" in out


def test_plan_create_only_sends_context(capsys):
    plan = {
        "id": "repo-1",
        "title": "Repository Analysis: acme/widgets",
        "status": "pending",
        "steps": [{"description": "Get repository information", "tool": "github-tools", "status": "pending"}],
    }
    with respx.mock(assert_all_called=True) as respx_mock:
        route = respx_mock.post(f"{BASE}/api/plans").mock(
            return_value=Response(200, json={"plan": plan, "progress": {"current": 0, "total": 1, "percentage": 0}})
        )
        code = zeroloop_cli.main(
            ["--base-url", BASE, "plan", "repo-analysis", "explain", "--owner", "acme", "--repo", "widgets", "--create-only"]
        )

    assert code == 0
    body = json.loads(route.calls.last.request.content.decode("utf-8"))
    assert body["context"] == {"owner": "acme", "repo": "widgets"}
    assert body["suggested_steps"] == []
    out = capsys.readouterr().out
    assert "[ ] Get repository information (github-tools)" in out
    assert "Progress: 0/1 (0%)" in out


def test_plan_streams_until_failure(capsys):
    plan = {"id": "p1", "title": "Simple Query", "status": "pending", "steps": []}
    stream = "".join(
        "data: " + json.dumps(event) + "\n\n"
        for event in [
            {"event_type": "step_update", "payload": {"step": {"status": "executing", "description": "Search"}, "progress": {"percentage": 0}}},
            {"event_type": "plan_failed", "payload": {"error": "Step 'Search' failed: HTTP 500"}},
        ]
    )
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post(f"{BASE}/api/plans").mock(return_value=Response(200, json={"plan": plan}))
        respx_mock.post(f"{BASE}/api/plans/p1/execute").mock(return_value=Response(200, json={"ok": True}))
        respx_mock.get(f"{BASE}/api/plans/p1/events").mock(
            return_value=Response(200, text=stream, headers={"content-type": "text/event-stream"})
        )
        code = zeroloop_cli.main(["--base-url", BASE, "plan", "single-step", "weather"])

    assert code == 1
    out = capsys.readouterr().out
    assert "executing Search" in out
    assert "Plan failed: Step 'Search' failed: HTTP 500" in out


def test_status_reports_http_errors(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get(f"{BASE}/api/plans/nope").mock(return_value=Response(404, json={"detail": "Plan not found"}))
        code = zeroloop_cli.main(["--base-url", BASE, "status", "nope"])
    assert code == 1
    assert "HTTP 404" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert zeroloop_cli.main([]) == 1
    assert "ZeroLoop CLI" in capsys.readouterr().out
