import json
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field


StepStatus = Literal["pending", "executing", "completed", "failed"]
PlanStatus = Literal["pending", "executing", "completed", "failed"]
StepType = Literal["search", "github", "knowledge", "synthesis", "tool"]
Complexity = Literal["simple", "moderate", "complex"]

TERMINAL_STATUSES = {"completed", "failed"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InvalidTransitionError(RuntimeError):
    """A step or plan was asked to move outside its lifecycle."""


# Tool results --------------------------------------------------------------


class SearchItem(BaseModel):
    title: Optional[str] = None
    snippet: Optional[str] = None
    url: Optional[str] = None
    # Entries that are not title/snippet records are kept as they came.
    raw: Any = None

    model_config = {"extra": "allow"}


class SearchResultList(BaseModel):
    kind: Literal["search_results"] = "search_results"
    items: List[SearchItem] = Field(default_factory=list)


class KeyValueResult(BaseModel):
    kind: Literal["key_value"] = "key_value"
    values: Any = None


class TextResult(BaseModel):
    kind: Literal["text"] = "text"
    text: str = ""


ToolResult = Annotated[Union[SearchResultList, KeyValueResult, TextResult], Field(discriminator="kind")]


def _search_item(item: Any) -> SearchItem:
    if isinstance(item, dict) and all(isinstance(item.get(key), (str, type(None))) for key in ("title", "snippet", "url")):
        return SearchItem(**{k: v for k, v in item.items() if k != "raw"})
    return SearchItem(raw=item)


def normalize_tool_payload(raw: Any) -> Union[SearchResultList, KeyValueResult, TextResult]:
    """Classify a raw tool response body into one of the tool result shapes."""
    if isinstance(raw, (SearchResultList, KeyValueResult, TextResult)):
        return raw
    if isinstance(raw, str):
        return TextResult(text=raw)
    if isinstance(raw, dict):
        for key in ("data", "results"):
            items = raw.get(key)
            if isinstance(items, list):
                return SearchResultList(items=[_search_item(item) for item in items])
    return KeyValueResult(values=raw)


def _serialize(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def extract_content(result: Union[SearchResultList, KeyValueResult, TextResult]) -> str:
    """Turn any tool result into the plain text used for adaptation and synthesis."""
    if isinstance(result, TextResult):
        return result.text
    if isinstance(result, SearchResultList):
        parts: List[str] = []
        for item in result.items:
            if item.raw is not None:
                parts.append(_serialize(item.raw))
            elif item.title and item.snippet:
                parts.append(f"{item.title}: {item.snippet}")
            else:
                parts.append(_serialize(item.model_dump(exclude_none=True)))
        return "\n\n".join(parts)
    if isinstance(result, KeyValueResult):
        return _serialize(result.values)
    raise TypeError(f"Unsupported tool result: {type(result).__name__}")


class ToolInvocationResult(BaseModel):
    success: bool
    data: Optional[ToolResult] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    execution_id: Optional[str] = None


# Plans ---------------------------------------------------------------------


class PlanStep(BaseModel):
    id: str
    description: str
    tool: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    step_type: StepType = "tool"
    status: StepStatus = "pending"
    result: Optional[ToolResult] = None
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    reasoning: Optional[str] = None
    extracted_content: Optional[str] = None
    estimated_duration: int = 5

    @property
    def is_synthesis(self) -> bool:
        return self.step_type == "synthesis"

    def mark_executing(self, reasoning: Optional[str] = None) -> None:
        if self.status != "pending":
            raise InvalidTransitionError(f"step {self.id}: {self.status} -> executing")
        self.status = "executing"
        self.start_time = utc_now()
        if reasoning and not self.reasoning:
            self.reasoning = reasoning

    def mark_completed(
        self,
        result: Optional[Union[SearchResultList, KeyValueResult, TextResult]],
        extracted_content: Optional[str],
    ) -> None:
        if self.status != "executing":
            raise InvalidTransitionError(f"step {self.id}: {self.status} -> completed")
        self.status = "completed"
        self.result = result
        self.extracted_content = extracted_content
        self.end_time = max(utc_now(), self.start_time) if self.start_time else utc_now()

    def mark_failed(self, error: str) -> None:
        if self.status != "executing":
            raise InvalidTransitionError(f"step {self.id}: {self.status} -> failed")
        self.status = "failed"
        self.error = error or "Tool execution failed"
        self.end_time = max(utc_now(), self.start_time) if self.start_time else utc_now()


class ExecutionPlan(BaseModel):
    id: str
    title: str
    description: str
    plan_type: str = "single-step"
    steps: List[PlanStep] = Field(default_factory=list)
    status: PlanStatus = "pending"
    current_step_index: int = 0
    is_adaptive: bool = False
    accumulated_findings: Dict[str, str] = Field(default_factory=dict)
    accumulated_content: List[str] = Field(default_factory=list)
    final_result: Optional[str] = None
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @computed_field
    @property
    def total_estimated_time(self) -> int:
        return sum(step.estimated_duration for step in self.steps)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def progress(self) -> Dict[str, int]:
        completed = sum(1 for step in self.steps if step.status == "completed")
        total = len(self.steps)
        return {"current": completed, "total": total, "percentage": percentage_of(completed, total)}


def percentage_of(done: int, total: int) -> int:
    if total <= 0:
        return 0
    # Half-up rounding; round() would send 12.5 to 12.
    return int((200 * done + total) // (2 * total))


# Detection -----------------------------------------------------------------


class HistoryMessage(BaseModel):
    role: str = "user"
    content: str = ""

    model_config = {"extra": "allow"}


class PlanDetection(BaseModel):
    should_use_plan: bool
    plan_type: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    suggested_steps: List[str] = Field(default_factory=list)
    context: Optional[Dict[str, Any]] = None
    estimated_complexity: Complexity = "moderate"


# HTTP payloads -------------------------------------------------------------


class DetectRequest(BaseModel):
    message: str
    history: List[HistoryMessage] = Field(default_factory=list)
    use_model: bool = False


class CreatePlanRequest(BaseModel):
    plan_type: str = "single-step"
    query: str
    context: Optional[Dict[str, Any]] = None
    suggested_steps: List[str] = Field(default_factory=list)


class ExecutePlanRequest(BaseModel):
    original_request: Optional[str] = None
