"""Decide whether a chat message needs a multi-step plan.

Two detectors live here. ``detect_plan`` is pure pattern matching and never
fails. ``ModelPlanDetector`` asks the model for a JSON classification and falls
back to ``detect_plan`` whenever that classification cannot be obtained; the
failure is carried explicitly in a ``DetectionOutcome`` instead of being
swallowed by a try/except around the whole call.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence

from pydantic import ValidationError

from .llm import extract_json_object
from .schemas import HistoryMessage, PlanDetection


logger = logging.getLogger("uvicorn.error")

NEWS_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\b(news|headlines|breaking|current events|today'?s news|latest news)\b", re.I),
    re.compile(r"\bwhat'?s happening (today|now|in the world)\b", re.I),
    re.compile(r"\b(update me|catch me up) on\b", re.I),
    re.compile(r"\btell me about (today'?s|recent|latest) (news|events)\b", re.I),
]

REPO_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\bwhat is this (repo|repository) about\b", re.I),
    re.compile(r"\bexplain this (repo|repository|project)\b", re.I),
    re.compile(r"\banalyze this (repo|repository|codebase)\b", re.I),
    re.compile(r"\btell me about this (repo|repository|project)\b", re.I),
    re.compile(r"\b(overview|summary) of this (repo|repository)\b", re.I),
]

RESEARCH_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\bresearch\b.*\b(comprehensive|thorough|detailed|in-depth)\b", re.I),
    re.compile(r"\b(comprehensive|thorough|detailed) (analysis|overview|summary)\b", re.I),
    re.compile(r"\btell me everything about\b", re.I),
    re.compile(r"\bi want to know (everything|all|more) about\b", re.I),
    re.compile(r"\bgive me a (complete|full|comprehensive) (overview|analysis)\b", re.I),
]

COMPLEXITY_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\band\b.*\band\b", re.I),
    re.compile(r"\balso\b", re.I),
    re.compile(r"\badditionally\b", re.I),
    re.compile(r"\bfurthermore\b", re.I),
    re.compile(r"\bmoreover\b", re.I),
]

GITHUB_URL_RE = re.compile(r"github\.com/([\w.-]+)/([\w.-]+)", re.I)
GITHUB_REQUEST_RE = re.compile(r"github\.com/[^/\s]+/[^/\s]+|\blatest commits?\b|\brepo(?:sitory)?\b", re.I)

DEFAULT_HISTORY_WINDOW = 10
MODEL_HISTORY_WINDOW = 3
MAX_SUGGESTED_STEPS = 3
COMPLEXITY_VALUES = {"simple", "moderate", "complex"}

PLAN_DETECTION_SYSTEM = "You are a planning assistant that responds only in valid JSON format. Be concise and practical."

PLAN_DETECTION_PROMPT = """You are an AI planning assistant. Analyze this user request and determine if it requires a multi-step plan.

User Request: "{message}"

Recent Context:
{context}

Respond with a JSON object containing:
{{
  "shouldUsePlan": boolean,
  "planType": "descriptive-name-for-plan-type",
  "confidence": 0.0-1.0,
  "reasoning": "why this does/doesn't need a plan",
  "suggestedSteps": ["step 1", "step 2", ...],
  "estimatedComplexity": "simple|moderate|complex"
}}

Guidelines:
- Use plans for: comprehensive research, multi-source data gathering, complex analysis
- Single responses for: simple questions, basic explanations, direct answers
- Consider available tools: web search, GitHub analysis, knowledge base search
- Maximum 3 steps per plan for efficiency
- Each step should be specific and actionable
- Avoid plans for basic greetings or simple queries"""


def _history_content(item: Any) -> str:
    if isinstance(item, HistoryMessage):
        return item.content or ""
    if isinstance(item, dict):
        content = item.get("content")
        return content if isinstance(content, str) else ""
    return ""


def _history_role(item: Any) -> str:
    if isinstance(item, HistoryMessage):
        return item.role
    if isinstance(item, dict):
        return str(item.get("role") or "user")
    return "user"


def _github_match(text: str) -> Optional[Dict[str, str]]:
    match = GITHUB_URL_RE.search(text or "")
    if not match:
        return None
    owner = match.group(1)
    repo = match.group(2).rstrip(".")
    if repo.lower().endswith(".git"):
        repo = repo[:-4]
    if not owner or not repo:
        return None
    return {"owner": owner, "repo": repo}


def extract_github_context(
    message: str,
    history: Optional[Sequence[Any]] = None,
    window: int = DEFAULT_HISTORY_WINDOW,
) -> Optional[Dict[str, str]]:
    """Find a github.com/owner/repo reference in the message, then in recent history."""
    found = _github_match(message)
    if found:
        return found
    recent = list(history or [])[-window:] if window > 0 else []
    for item in recent:
        found = _github_match(_history_content(item))
        if found:
            return found
    return None


def _any_match(patterns: Sequence[Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def detect_plan(
    message: str,
    history: Optional[Sequence[Any]] = None,
    history_window: int = DEFAULT_HISTORY_WINDOW,
) -> PlanDetection:
    text = message or ""

    if _any_match(NEWS_PATTERNS, text):
        return PlanDetection(
            should_use_plan=True,
            plan_type="news-search",
            confidence=0.9,
            reasoning="News request detected - will search multiple news categories for comprehensive coverage",
            estimated_complexity="moderate",
        )

    if _any_match(REPO_PATTERNS, text):
        github_context = extract_github_context(text, history, history_window)
        # Without a concrete repository a generic "explain this" is not a repo request.
        if github_context:
            return PlanDetection(
                should_use_plan=True,
                plan_type="repo-analysis",
                confidence=0.95,
                reasoning="Repository analysis request detected - will perform comprehensive repo examination",
                context=github_context,
                estimated_complexity="complex",
            )

    if _any_match(RESEARCH_PATTERNS, text):
        return PlanDetection(
            should_use_plan=True,
            plan_type="comprehensive-search",
            confidence=0.8,
            reasoning="Comprehensive research request detected - will search multiple sources",
            estimated_complexity="complex",
        )

    if text.count("?") > 1 or _any_match(COMPLEXITY_PATTERNS, text):
        return PlanDetection(
            should_use_plan=True,
            plan_type="comprehensive-search",
            confidence=0.7,
            reasoning="Complex multi-part query detected - will break down into multiple searches",
            estimated_complexity="moderate",
        )

    return PlanDetection(
        should_use_plan=False,
        plan_type="single-step",
        confidence=0.6,
        reasoning="Simple query that can be handled with single tool execution",
        estimated_complexity="simple",
    )


class DetectionError(Exception):
    """Model classification could not be obtained or understood."""


@dataclass
class DetectionOutcome:
    detection: Optional[PlanDetection] = None
    error: Optional[DetectionError] = None

    @classmethod
    def ok(cls, detection: PlanDetection) -> "DetectionOutcome":
        return cls(detection=detection)

    @classmethod
    def fail(cls, reason: str) -> "DetectionOutcome":
        return cls(error=DetectionError(reason))

    @property
    def is_ok(self) -> bool:
        return self.detection is not None

    def or_else(self, fallback: Callable[[], PlanDetection]) -> PlanDetection:
        if self.detection is not None:
            return self.detection
        return fallback()


def github_precheck(message: str) -> Optional[PlanDetection]:
    if not GITHUB_REQUEST_RE.search(message or ""):
        return None
    context = _github_match(message)
    if "latest commit" in (message or "").lower():
        return PlanDetection(
            should_use_plan=True,
            plan_type="github-commits",
            confidence=0.95,
            reasoning="GitHub commit history request detected",
            suggested_steps=["Fetch latest commits from repository"],
            context=context,
            estimated_complexity="simple",
        )
    return PlanDetection(
        should_use_plan=True,
        plan_type="github-repository",
        confidence=0.9,
        reasoning="GitHub repository analysis request detected",
        suggested_steps=["Analyze repository information", "Fetch repository details"],
        context=context,
        estimated_complexity="moderate",
    )


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.5
    return max(0.0, min(confidence, 1.0))


def parse_classification(text: str) -> DetectionOutcome:
    raw = extract_json_object(text)
    if raw is None:
        return DetectionOutcome.fail("model reply contained no JSON object")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        return DetectionOutcome.fail(f"invalid JSON in model reply: {exc}")
    if not isinstance(data, dict):
        return DetectionOutcome.fail("model reply was not a JSON object")
    missing = [key for key in ("shouldUsePlan", "planType") if key not in data]
    if missing:
        return DetectionOutcome.fail(f"classification missing fields: {', '.join(missing)}")
    if not isinstance(data["shouldUsePlan"], bool):
        return DetectionOutcome.fail("shouldUsePlan must be a boolean")
    plan_type = str(data.get("planType") or "").strip()
    if not plan_type:
        return DetectionOutcome.fail("planType is empty")
    steps = data.get("suggestedSteps") or []
    if not isinstance(steps, list):
        steps = []
    complexity = str(data.get("estimatedComplexity") or "moderate").strip().lower()
    try:
        detection = PlanDetection(
            should_use_plan=data["shouldUsePlan"],
            plan_type=plan_type,
            confidence=_coerce_confidence(data.get("confidence", 0.5)),
            reasoning=str(data.get("reasoning") or "AI-determined plan requirement"),
            suggested_steps=[str(step).strip() for step in steps if str(step).strip()][:MAX_SUGGESTED_STEPS],
            estimated_complexity=complexity if complexity in COMPLEXITY_VALUES else "moderate",
        )
    except ValidationError as exc:
        return DetectionOutcome.fail(f"classification rejected: {exc}")
    return DetectionOutcome.ok(detection)


class ModelPlanDetector:
    """Model-assisted detector; cheap GitHub pre-check first, pattern detector as fallback."""

    def __init__(self, model_client: Any, history_window: int = DEFAULT_HISTORY_WINDOW):
        self.model_client = model_client
        self.history_window = history_window

    def build_prompt(self, message: str, history: Optional[Sequence[Any]] = None) -> str:
        recent = list(history or [])[-MODEL_HISTORY_WINDOW:]
        context = "\n".join(f"{_history_role(item)}: {_history_content(item)[:100]}..." for item in recent)
        return PLAN_DETECTION_PROMPT.format(message=message, context=context)

    async def classify(self, message: str, history: Optional[Sequence[Any]] = None) -> DetectionOutcome:
        try:
            reply = await self.model_client.complete(
                [
                    {"role": "system", "content": PLAN_DETECTION_SYSTEM},
                    {"role": "user", "content": self.build_prompt(message, history)},
                ],
                temperature=0.3,
                max_tokens=500,
            )
        except Exception as exc:
            return DetectionOutcome.fail(f"model call failed: {exc}")
        return parse_classification(reply)

    async def detect(self, message: str, history: Optional[Sequence[Any]] = None) -> PlanDetection:
        precheck = github_precheck(message)
        if precheck is not None:
            return precheck
        outcome = await self.classify(message, history)
        if outcome.error is not None:
            logger.warning("AI plan detection failed, using pattern fallback: %s", outcome.error)
        return outcome.or_else(lambda: detect_plan(message, history, self.history_window))
