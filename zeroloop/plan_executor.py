import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .adaptation import PlanAdapter
from .planner import build_adaptive_steps
from .schemas import ExecutionPlan, InvalidTransitionError, PlanStep, TextResult, extract_content, utc_now
from .synthesis import Synthesizer, synthesize_local


logger = logging.getLogger("uvicorn.error")

StepCallback = Callable[[PlanStep], Any]
CompleteCallback = Callable[[str], Any]


class PlanExecutionError(RuntimeError):
    """Execution of a plan stopped before it could complete."""


class StepFailedError(PlanExecutionError):
    def __init__(self, step: PlanStep):
        super().__init__(f"Step '{step.description}' failed: {step.error}")
        self.step_id = step.id


class PlanCancelledError(PlanExecutionError):
    pass


class StepQueue:
    """Cursor over the plan's step list that also accepts new steps mid-run.

    The list is the plan's own ``steps`` list, so insertions are visible to
    anything reading the plan. Steps before the cursor have been taken.
    """

    def __init__(self, steps: List[PlanStep]):
        self.steps = steps
        self.cursor = 0

    def has_next(self) -> bool:
        return self.cursor < len(self.steps)

    def pop(self) -> Tuple[int, PlanStep]:
        if not self.has_next():
            raise IndexError("step queue is empty")
        index = self.cursor
        self.cursor += 1
        return index, self.steps[index]

    def remaining(self) -> List[PlanStep]:
        return self.steps[self.cursor:]

    def insert_next(self, new_steps: List[PlanStep]) -> int:
        """Queue ``new_steps`` to run right after the step just taken.

        Everything still queued, synthesis steps included, stays behind the
        inserted steps.
        """
        position = self.cursor
        self.steps[position:position] = new_steps
        return position


class PlanExecutor:
    """Runs one plan at a time, strictly sequentially, fail-fast on tool errors."""

    def __init__(
        self,
        invoker: Any,
        synthesizer: Synthesizer,
        adapter: Optional[PlanAdapter] = None,
        max_adaptive_steps: int = 4,
    ):
        self.invoker = invoker
        self.synthesizer = synthesizer
        self.adapter = adapter
        self.max_adaptive_steps = max_adaptive_steps
        self.plan: Optional[ExecutionPlan] = None
        self._cancelled = False

    async def execute(
        self,
        plan: ExecutionPlan,
        on_step_update: Optional[StepCallback] = None,
        on_plan_complete: Optional[CompleteCallback] = None,
        original_request: Optional[str] = None,
    ) -> str:
        if plan.status != "pending":
            raise InvalidTransitionError(f"plan {plan.id}: {plan.status} -> executing")
        self.plan = plan
        self._cancelled = False
        request = original_request or plan.description
        plan.status = "executing"
        plan.start_time = utc_now()
        plan.error = None
        logger.info("Plan %s started with %d steps", plan.id, len(plan.steps))

        queue = StepQueue(plan.steps)
        inserted = 0
        try:
            while queue.has_next():
                self._raise_if_cancelled()
                index, step = queue.pop()
                plan.current_step_index = index
                reasoning = None
                if plan.is_adaptive:
                    reasoning = f"Executing {step.description} to gather information for: {request}"
                step.mark_executing(reasoning)
                await self._notify(on_step_update, step)
                await self._run_step(plan, index, step, on_step_update)
                await self._notify(on_step_update, step)

                budget = self.max_adaptive_steps - inserted
                if plan.is_adaptive and queue.has_next() and budget > 0 and not self._cancelled:
                    new_steps = await self._adapt(plan, request, queue.remaining(), budget)
                    if new_steps:
                        queue.insert_next(new_steps)
                        inserted += len(new_steps)

            self._raise_if_cancelled()
            final_result = await self.synthesizer.synthesize(
                request, plan.accumulated_content, plan.accumulated_findings
            )
            self._raise_if_cancelled()
        except Exception as exc:
            self._fail(plan, str(exc) or exc.__class__.__name__)
            raise

        plan.final_result = final_result
        plan.status = "completed"
        plan.end_time = utc_now()
        logger.info("Plan %s completed (%d steps)", plan.id, len(plan.steps))
        await self._notify(on_plan_complete, final_result)
        return final_result

    async def _run_step(
        self,
        plan: ExecutionPlan,
        index: int,
        step: PlanStep,
        on_step_update: Optional[StepCallback],
    ) -> None:
        if step.is_synthesis:
            # One entry per earlier tool step, empty ones included; sections are positional.
            section_contents = [s.extracted_content or "" for s in plan.steps[:index] if not s.is_synthesis]
            content = synthesize_local(step.parameters.get("type"), section_contents)
            step.mark_completed(TextResult(text=content), content)
            plan.accumulated_findings[step.tool] = content
            return

        try:
            outcome = await self.invoker.invoke(step.tool, step.parameters)
        except Exception as exc:
            step.mark_failed(str(exc))
            await self._notify(on_step_update, step)
            raise

        if not outcome.success:
            step.mark_failed(outcome.error or "Tool execution failed")
            logger.info("Plan %s step %s failed: %s", plan.id, step.id, step.error)
            await self._notify(on_step_update, step)
            raise StepFailedError(step)

        content = extract_content(outcome.data) if outcome.data is not None else ""
        if content:
            plan.accumulated_content.append(content)
            plan.accumulated_findings[step.tool] = content
        step.mark_completed(outcome.data, content or None)

    async def _adapt(
        self,
        plan: ExecutionPlan,
        request: str,
        remaining: List[PlanStep],
        budget: int,
    ) -> List[PlanStep]:
        if self.adapter is None:
            return []
        decision = await self.adapter.analyze(request, plan.accumulated_content, remaining)
        if not decision.needs_more_steps:
            return []
        queries = await self.adapter.propose_queries(request, plan.accumulated_content, decision.reasoning)
        new_steps = build_adaptive_steps(queries, decision.reasoning)[:budget]
        if new_steps:
            logger.info("Plan %s adapted: +%d steps (%s)", plan.id, len(new_steps), decision.reasoning)
        return new_steps

    def _raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise PlanCancelledError("Plan cancelled")

    def _fail(self, plan: ExecutionPlan, message: str) -> None:
        plan.status = "failed"
        plan.final_result = None
        if not plan.error:
            plan.error = message
        if plan.end_time is None:
            plan.end_time = utc_now()
        logger.info("Plan %s failed: %s", plan.id, plan.error)

    @staticmethod
    async def _notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("Plan callback failed: %s", exc)

    def cancel(self, plan: Optional[ExecutionPlan] = None) -> bool:
        """Mark the plan failed; a running loop stops before its next step."""
        target = plan or self.plan
        if target is None or target.is_terminal:
            return False
        if target is self.plan:
            self._cancelled = True
        target.status = "failed"
        target.error = "Plan cancelled"
        target.final_result = None
        target.end_time = utc_now()
        logger.info("Plan %s cancelled", target.id)
        return True

    def progress(self) -> Dict[str, int]:
        if self.plan is None:
            return {"current": 0, "total": 0, "percentage": 0}
        return self.plan.progress()
