"""Entry point the chat layer talks to: detect, build, execute, cancel, observe."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from .adaptation import PlanAdapter
from .config import AppSettings, SettingsStore
from .detection import ModelPlanDetector, detect_plan, extract_github_context
from .plan_executor import CompleteCallback, PlanExecutor, StepCallback
from .planner import build_dynamic_plan, build_plan
from .schemas import ExecutionPlan, PlanDetection
from .synthesis import Synthesizer


logger = logging.getLogger("uvicorn.error")

TEMPLATE_PLAN_TYPES = {
    "news-search",
    "repo-analysis",
    "comprehensive-search",
    "github-commits",
    "github-repository",
}
REPO_PLAN_TYPES = {"repo-analysis", "github-commits", "github-repository"}


class PlanOrchestrator:
    """Owns the one active plan of a conversation session."""

    def __init__(
        self,
        settings_store: SettingsStore,
        executor: PlanExecutor,
        detector: ModelPlanDetector,
    ):
        self.settings_store = settings_store
        self.executor = executor
        self.detector = detector
        self.current_plan: Optional[ExecutionPlan] = None
        self._unsubscribe = settings_store.subscribe(self._on_settings_changed)

    def _on_settings_changed(self, previous: AppSettings, current: AppSettings) -> None:
        self.executor.max_adaptive_steps = current.max_adaptive_steps
        self.detector.history_window = current.history_window

    @property
    def is_executing(self) -> bool:
        return self.current_plan is not None and self.current_plan.status == "executing"

    def create_plan(self, plan_type: str, query: str, context: Optional[Dict[str, Any]] = None) -> ExecutionPlan:
        plan = build_plan(plan_type, query, context)
        self.current_plan = plan
        return plan

    def create_dynamic_plan(self, user_request: str, suggested_steps: Sequence[str], plan_type: str) -> ExecutionPlan:
        plan = build_dynamic_plan(user_request, suggested_steps, plan_type)
        self.current_plan = plan
        return plan

    def plan_for_detection(
        self,
        message: str,
        detection: PlanDetection,
        history: Optional[List[Any]] = None,
    ) -> ExecutionPlan:
        plan_type = detection.plan_type
        context = detection.context
        if plan_type in REPO_PLAN_TYPES and not context:
            context = extract_github_context(message, history, self.settings_store.settings.history_window)
            if context is None and plan_type == "repo-analysis":
                logger.info("No repository named for repo-analysis; running a comprehensive search instead")
                plan_type = "comprehensive-search"
        if plan_type in TEMPLATE_PLAN_TYPES:
            return self.create_plan(plan_type, message, context)
        if detection.suggested_steps:
            return self.create_dynamic_plan(message, detection.suggested_steps, plan_type)
        return self.create_plan(plan_type, message, context)

    async def execute_plan(
        self,
        plan: ExecutionPlan,
        on_step_update: Optional[StepCallback] = None,
        on_plan_complete: Optional[CompleteCallback] = None,
        original_request: Optional[str] = None,
    ) -> str:
        self.current_plan = plan
        return await self.executor.execute(plan, on_step_update, on_plan_complete, original_request)

    def cancel_plan(self) -> bool:
        if self.current_plan is None:
            return False
        return self.executor.cancel(self.current_plan)

    def get_progress(self) -> Dict[str, int]:
        if self.current_plan is None:
            return {"current": 0, "total": 0, "percentage": 0}
        return self.current_plan.progress()

    async def detect(
        self,
        message: str,
        history: Optional[List[Any]] = None,
        use_model: bool = False,
    ) -> PlanDetection:
        if use_model:
            return await self.detector.detect(message, history)
        return detect_plan(message, history, self.settings_store.settings.history_window)

    async def handle_message(
        self,
        message: str,
        history: Optional[List[Any]] = None,
        on_step_update: Optional[StepCallback] = None,
        on_plan_complete: Optional[CompleteCallback] = None,
        use_model: bool = True,
    ) -> Optional[str]:
        """Run the whole pipeline for one user message.

        Returns ``None`` when the message does not need a plan; the caller
        answers it with a single tool call or a plain chat reply.
        """
        detection = await self.detect(message, history, use_model=use_model)
        if not detection.should_use_plan:
            return None
        logger.info("Plan detected: %s (%.2f) %s", detection.plan_type, detection.confidence, detection.reasoning)
        plan = self.plan_for_detection(message, detection, history)
        return await self.execute_plan(plan, on_step_update, on_plan_complete, original_request=message)

    def close(self) -> None:
        self._unsubscribe()


def build_orchestrator(settings_store: SettingsStore, model_client: Any, tool_invoker: Any) -> PlanOrchestrator:
    settings = settings_store.settings
    executor = PlanExecutor(
        tool_invoker,
        Synthesizer(model_client),
        adapter=PlanAdapter(model_client),
        max_adaptive_steps=settings.max_adaptive_steps,
    )
    detector = ModelPlanDetector(model_client, history_window=settings.history_window)
    return PlanOrchestrator(settings_store, executor, detector)
