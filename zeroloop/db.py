import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS plan_events(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plan_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    payload_json TEXT,
    created_at TEXT
);
CREATE TABLE IF NOT EXISTS configs(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    saved_at TEXT,
    settings_json TEXT
);
CREATE TABLE IF NOT EXISTS tool_executions(
    id TEXT PRIMARY KEY,
    tool TEXT,
    endpoint TEXT,
    parameters_json TEXT,
    status TEXT,
    result_json TEXT,
    error TEXT,
    created_at TEXT,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_plan_events ON plan_events(plan_id, seq);
CREATE INDEX IF NOT EXISTS idx_tool_exec_created ON tool_executions(created_at);
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class Database:
    """Local audit log: tool executions, plan events and saved configs."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as conn:
            await conn.executescript(SCHEMA)
            await conn.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as conn:
            await conn.execute(query, params)
            await conn.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as conn:
            conn.row_factory = aiosqlite.Row
            async with conn.execute(query, params) as cursor:
                return list(await cursor.fetchall())

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Plan events

    async def next_event_seq(self, plan_id: str) -> int:
        row = await self.fetchone("SELECT COALESCE(MAX(seq), 0) AS last_seq FROM plan_events WHERE plan_id=?", (plan_id,))
        return int(row["last_seq"]) + 1 if row else 1

    async def add_event(self, plan_id: str, event_type: str, payload: dict) -> dict:
        event = {
            "plan_id": plan_id,
            "seq": await self.next_event_seq(plan_id),
            "event_type": event_type,
            "payload": payload,
            "created_at": utc_now(),
        }
        await self.execute(
            "INSERT INTO plan_events(plan_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (plan_id, event["seq"], event_type, _dumps(payload), event["created_at"]),
        )
        return event

    async def list_events(self, plan_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT * FROM plan_events WHERE plan_id=? AND seq>? ORDER BY seq",
            (plan_id, after_seq),
        )
        return [self._event_row(row) for row in rows]

    @staticmethod
    def _event_row(row: aiosqlite.Row) -> dict:
        return {
            "plan_id": row["plan_id"],
            "seq": row["seq"],
            "event_type": row["event_type"],
            "payload": json.loads(row["payload_json"] or "{}"),
            "created_at": row["created_at"],
        }

    # Settings snapshots

    async def save_config(self, settings: dict) -> None:
        await self.execute("INSERT INTO configs(saved_at, settings_json) VALUES (?,?)", (utc_now(), _dumps(settings)))

    # Tool execution audit

    async def record_execution(self, execution_id: str, tool: str, endpoint: str, parameters: Dict[str, Any]) -> None:
        now = utc_now()
        await self.execute(
            "INSERT INTO tool_executions(id, tool, endpoint, parameters_json, status, created_at, updated_at) "
            "VALUES (?,?,?,?,'running',?,?)",
            (execution_id, tool, endpoint, _dumps(parameters), now, now),
        )

    async def update_execution(
        self,
        execution_id: str,
        status: str,
        result: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> None:
        result_json = _dumps(result) if result is not None else None
        await self.execute(
            "UPDATE tool_executions SET status=?, result_json=?, error=?, updated_at=? WHERE id=?",
            (status, result_json, error, utc_now(), execution_id),
        )

    async def get_execution(self, execution_id: str) -> Optional[dict]:
        row = await self.fetchone("SELECT * FROM tool_executions WHERE id=?", (execution_id,))
        return self._execution_row(row) if row else None

    async def list_executions(self, limit: int = 50) -> List[dict]:
        rows = await self.fetchall("SELECT * FROM tool_executions ORDER BY created_at DESC LIMIT ?", (limit,))
        return [self._execution_row(row) for row in rows]

    @staticmethod
    def _execution_row(row: aiosqlite.Row) -> dict:
        result_json = row["result_json"]
        return {
            "id": row["id"],
            "tool": row["tool"],
            "endpoint": row["endpoint"],
            "parameters": json.loads(row["parameters_json"] or "{}"),
            "status": row["status"],
            "result": json.loads(result_json) if result_json else None,
            "error": row["error"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
