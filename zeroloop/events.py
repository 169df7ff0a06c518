import asyncio
from typing import Dict, List, Optional

from .db import Database
from .schemas import ExecutionPlan, PlanStep


STEP_UPDATE = "step_update"
PLAN_COMPLETE = "plan_complete"
PLAN_FAILED = "plan_failed"
TERMINAL_EVENTS = {PLAN_COMPLETE, PLAN_FAILED}


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def emit(self, plan_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("plan_id", plan_id)
        stored = await self.db.add_event(plan_id, event_type, safe_payload)
        async with self.lock:
            queues = list(self.subscribers.get(plan_id, []))
        for q in queues:
            await q.put(stored)
        return stored

    async def subscribe(self, plan_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(plan_id, []).append(queue)
        return queue

    async def unsubscribe(self, plan_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(plan_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(plan_id, None)


class ProgressSink:
    """Executor callbacks that publish plan progress on the bus."""

    def __init__(self, bus: EventBus, plan: ExecutionPlan):
        self.bus = bus
        self.plan = plan

    async def on_step_update(self, step: PlanStep) -> None:
        await self.bus.emit(
            self.plan.id,
            STEP_UPDATE,
            {"step": step.model_dump(mode="json"), "progress": self.plan.progress()},
        )

    async def on_plan_complete(self, result: str) -> None:
        await self.bus.emit(
            self.plan.id,
            PLAN_COMPLETE,
            {"final_result": result, "progress": self.plan.progress()},
        )

    async def on_plan_failed(self, error: Optional[str]) -> None:
        await self.bus.emit(
            self.plan.id,
            PLAN_FAILED,
            {"error": error or self.plan.error or "Plan failed", "progress": self.plan.progress()},
        )
