from pathlib import Path

import pytest

from zeroloop.db import Database


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = Database(str(tmp_path / "schema.db"))
    await db.init()
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    assert {"plan_events", "configs", "tool_executions"}.issubset(tables)


@pytest.mark.asyncio
async def test_event_seq_is_per_plan(tmp_path: Path):
    db = Database(str(tmp_path / "events.db"))
    await db.init()
    first = await db.add_event("plan-a", "step_update", {"n": 1})
    second = await db.add_event("plan-a", "plan_complete", {"n": 2})
    other = await db.add_event("plan-b", "step_update", {"n": 1})
    assert (first["seq"], second["seq"], other["seq"]) == (1, 2, 1)

    events = await db.list_events("plan-a")
    assert [ev["event_type"] for ev in events] == ["step_update", "plan_complete"]
    assert events[1]["payload"] == {"n": 2}
    later = await db.list_events("plan-a", after_seq=1)
    assert [ev["seq"] for ev in later] == [2]
    assert await db.list_events("missing") == []


@pytest.mark.asyncio
async def test_tool_execution_records(tmp_path: Path):
    db = Database(str(tmp_path / "exec.db"))
    await db.init()
    await db.record_execution("e1", "github-tools", "github-tools", {"action": "get_commits"})
    record = await db.get_execution("e1")
    assert record["status"] == "running"
    assert record["parameters"] == {"action": "get_commits"}
    assert record["result"] is None

    await db.update_execution("e1", "failed", error="HTTP 404: not found")
    record = await db.get_execution("e1")
    assert record["status"] == "failed"
    assert record["error"] == "HTTP 404: not found"
    assert record["updated_at"] >= record["created_at"]

    await db.record_execution("e2", "web-search", "web-search", {"query": "x"})
    ids = {row["id"] for row in await db.list_executions(limit=10)}
    assert ids == {"e1", "e2"}
    assert len(await db.list_executions(limit=1)) == 1
    assert await db.get_execution("nope") is None
