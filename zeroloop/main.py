import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .config import CONFIG_PATH, SECRET_MASK, AppSettings, SettingsStore, load_settings, save_settings
from .db import Database
from .events import TERMINAL_EVENTS, EventBus, ProgressSink
from .llm import ModelClient
from .orchestrator import PlanOrchestrator, build_orchestrator
from .schemas import CreatePlanRequest, DetectRequest, ExecutePlanRequest, ExecutionPlan
from .tools import DEFAULT_REGISTRY, ToolInvoker, ToolRegistry


logger = logging.getLogger("uvicorn.error")


def get_settings_store(request: Request) -> SettingsStore:
    return request.app.state.settings_store


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_sessions(request: Request) -> Dict[str, PlanOrchestrator]:
    return request.app.state.sessions


def get_plan_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.plan_tasks


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def new_orchestrator(request: Request) -> PlanOrchestrator:
    state = request.app.state
    return build_orchestrator(state.settings_store, state.model_client, state.tool_invoker)


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


def _strip_masked(payload: Dict[str, Any]) -> Dict[str, Any]:
    # The settings page echoes masked secrets back; keep the stored values.
    cleaned: Dict[str, Any] = {}
    for key, value in payload.items():
        if value == SECRET_MASK:
            continue
        if isinstance(value, dict):
            value = {k: v for k, v in value.items() if v != SECRET_MASK}
        cleaned[key] = value
    return cleaned


def _session_for(plan_id: str, sessions: Dict[str, PlanOrchestrator]) -> PlanOrchestrator:
    orchestrator = sessions.get(plan_id)
    if orchestrator is None or orchestrator.current_plan is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    return orchestrator


def _evict_sessions(
    sessions: Dict[str, PlanOrchestrator],
    plan_tasks: Dict[str, asyncio.Task],
    limit: int,
) -> None:
    """Drop the oldest sessions without a running task until there is room for one more."""
    for plan_id in list(sessions):
        if len(sessions) < max(1, limit):
            break
        if plan_id in plan_tasks:
            continue
        sessions.pop(plan_id).close()
        logger.info("Released plan session %s", plan_id)


def _plan_body(plan: ExecutionPlan) -> Dict[str, Any]:
    return {"plan": plan.model_dump(mode="json"), "progress": plan.progress()}


async def run_plan_task(
    orchestrator: PlanOrchestrator,
    plan: ExecutionPlan,
    bus: EventBus,
    original_request: Optional[str],
) -> None:
    sink = ProgressSink(bus, plan)
    try:
        await orchestrator.execute_plan(plan, sink.on_step_update, sink.on_plan_complete, original_request)
    except Exception as exc:
        logger.warning("Plan %s failed: %s", plan.id, exc)
        await sink.on_plan_failed(plan.error or str(exc))


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    store: SettingsStore = Depends(get_settings_store),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    try:
        new_settings = store.update(**_strip_masked(body))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False, include_context=False, include_input=False))
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/detect")
async def detect_route(payload: DetectRequest, request: Request):
    message = payload.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message required.")
    orchestrator: PlanOrchestrator = request.app.state.orchestrator
    detection = await orchestrator.detect(message, payload.history, use_model=payload.use_model)
    return {"detection": detection.model_dump()}


@router.post("/api/plans")
async def create_plan_route(
    payload: CreatePlanRequest,
    request: Request,
    settings: AppSettings = Depends(get_settings),
    sessions: Dict[str, PlanOrchestrator] = Depends(get_sessions),
    plan_tasks: Dict[str, asyncio.Task] = Depends(get_plan_tasks),
):
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query required.")
    orchestrator = new_orchestrator(request)
    try:
        if payload.suggested_steps:
            plan = orchestrator.create_dynamic_plan(query, payload.suggested_steps, payload.plan_type)
        else:
            plan = orchestrator.create_plan(payload.plan_type, query, payload.context)
    except ValueError as exc:
        orchestrator.close()
        raise HTTPException(status_code=400, detail=str(exc))
    _evict_sessions(sessions, plan_tasks, settings.max_plan_sessions)
    sessions[plan.id] = orchestrator
    return _plan_body(plan)


@router.get("/api/plans/{plan_id}")
async def get_plan_route(plan_id: str, sessions: Dict[str, PlanOrchestrator] = Depends(get_sessions)):
    return _plan_body(_session_for(plan_id, sessions).current_plan)


@router.get("/api/plans/{plan_id}/progress")
async def get_progress_route(plan_id: str, sessions: Dict[str, PlanOrchestrator] = Depends(get_sessions)):
    orchestrator = _session_for(plan_id, sessions)
    return {"plan_id": plan_id, "status": orchestrator.current_plan.status, **orchestrator.get_progress()}


@router.delete("/api/plans/{plan_id}")
async def delete_plan_route(
    plan_id: str,
    sessions: Dict[str, PlanOrchestrator] = Depends(get_sessions),
    plan_tasks: Dict[str, asyncio.Task] = Depends(get_plan_tasks),
):
    _session_for(plan_id, sessions)
    if plan_id in plan_tasks:
        raise HTTPException(status_code=409, detail="Plan is executing")
    sessions.pop(plan_id).close()
    return {"ok": True}


@router.post("/api/plans/{plan_id}/execute")
async def execute_plan_route(
    plan_id: str,
    payload: Optional[ExecutePlanRequest] = None,
    sessions: Dict[str, PlanOrchestrator] = Depends(get_sessions),
    plan_tasks: Dict[str, asyncio.Task] = Depends(get_plan_tasks),
    bus: EventBus = Depends(get_event_bus),
):
    orchestrator = _session_for(plan_id, sessions)
    plan = orchestrator.current_plan
    if plan.status != "pending" or plan_id in plan_tasks:
        raise HTTPException(status_code=409, detail=f"Plan is {plan.status}")
    original_request = payload.original_request if payload else None
    task = asyncio.create_task(run_plan_task(orchestrator, plan, bus, original_request))
    plan_tasks[plan_id] = task
    task.add_done_callback(lambda _t: plan_tasks.pop(plan_id, None))
    return {"ok": True, "plan_id": plan_id, "status": "started"}


@router.post("/api/plans/{plan_id}/cancel")
async def cancel_plan_route(
    plan_id: str,
    sessions: Dict[str, PlanOrchestrator] = Depends(get_sessions),
    plan_tasks: Dict[str, asyncio.Task] = Depends(get_plan_tasks),
    bus: EventBus = Depends(get_event_bus),
):
    orchestrator = _session_for(plan_id, sessions)
    plan = orchestrator.current_plan
    if plan.is_terminal:
        return {"ok": False, "status": plan.status}
    orchestrator.cancel_plan()
    # A running task reports the failure itself once its current step returns.
    if plan_id not in plan_tasks:
        await ProgressSink(bus, plan).on_plan_failed(plan.error)
    return {"ok": True, "status": plan.status}


@router.get("/api/plans/{plan_id}/events")
async def stream_plan_events(
    plan_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    sessions: Dict[str, PlanOrchestrator] = Depends(get_sessions),
):
    _session_for(plan_id, sessions)

    # Preload past events then stream new ones until the plan ends
    async def event_generator():
        queue = await bus.subscribe(plan_id)
        try:
            past = await db.list_events(plan_id)
            for ev in past:
                yield sse_format(ev)
                if ev["event_type"] in TERMINAL_EVENTS:
                    return
            last_seq = past[-1]["seq"] if past else 0
            while True:
                ev = await queue.get()
                if ev["seq"] <= last_seq:
                    continue
                yield sse_format(ev)
                if ev["event_type"] in TERMINAL_EVENTS:
                    return
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(plan_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/tools")
async def list_tools_route(request: Request):
    registry: ToolRegistry = request.app.state.tool_registry
    return {"tools": registry.describe()}


@router.get("/api/executions")
async def list_executions_route(limit: int = 50, db: Database = Depends(get_db)):
    limit = max(1, min(limit, 500))
    return {"executions": await db.list_executions(limit)}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    model_client: Optional[Any] = None,
    tool_invoker: Optional[Any] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            for task in list(app.state.plan_tasks.values()):
                task.cancel()
            for orchestrator in app.state.sessions.values():
                orchestrator.close()
            app.state.orchestrator.close()
            app.state.unsubscribe_settings()
            await app.state.model_client.close()
            await app.state.tool_invoker.close()

    app = FastAPI(title="ZeroLoop Plan Orchestrator", lifespan=lifespan)
    store = SettingsStore(settings)
    app.state.settings_store = store
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.model_client = model_client or ModelClient(store)
    app.state.tool_invoker = tool_invoker or ToolInvoker(store, audit=app.state.db)
    app.state.tool_registry = getattr(app.state.tool_invoker, "registry", None) or DEFAULT_REGISTRY
    app.state.bus = EventBus(app.state.db)
    app.state.orchestrator = build_orchestrator(store, app.state.model_client, app.state.tool_invoker)
    app.state.sessions = {}
    app.state.plan_tasks = {}
    app.state.config_path = config_path or CONFIG_PATH

    def _on_settings_changed(previous: AppSettings, current: AppSettings) -> None:
        app.state.settings = current

    app.state.unsubscribe_settings = store.subscribe(_on_settings_changed)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("ZEROLOOP_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "zeroloop.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
