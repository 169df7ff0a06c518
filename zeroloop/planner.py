import logging
import re
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .detection import extract_github_context
from .schemas import ExecutionPlan, PlanStep, utc_now
from .tools import DEFAULT_REGISTRY, GITHUB_TOOLS, KNOWLEDGE_SEARCH, SYNTHESIZE_RESULTS, WEB_SEARCH


logger = logging.getLogger("uvicorn.error")

MAX_ADAPTIVE_BATCH = 2
DYNAMIC_STEP_DURATION = 8

_LEADING_VERB_RE = re.compile(r"^(search|find|look for|get|fetch)\s+", re.I)

# Scanned in order; the first group with a hit decides the tool.
_TOOL_KEYWORDS = (
    (WEB_SEARCH, ("search", "find", "news", "current", "look up")),
    (GITHUB_TOOLS, ("github", "repo", "code", "commit")),
    (KNOWLEDGE_SEARCH, ("knowledge", "remember", "my notes")),
)


def new_plan_id(prefix: str = "plan") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def infer_tool_from_step(step: str) -> str:
    lowered = (step or "").lower()
    for tool, keywords in _TOOL_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return tool
    return WEB_SEARCH


def infer_parameters_from_step(step: str) -> Dict[str, Any]:
    text = (step or "").strip()
    query = _LEADING_VERB_RE.sub("", text).strip()
    return {"query": query or text}


def _step(
    plan_id: str,
    index: int,
    description: str,
    tool: str,
    parameters: Dict[str, Any],
    step_type: str,
    estimated_duration: int,
) -> PlanStep:
    return PlanStep(
        id=f"{plan_id}-step-{index}",
        description=description,
        tool=tool,
        parameters=parameters,
        step_type=step_type,
        estimated_duration=estimated_duration,
    )


def _repo_context(query: str, context: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    context = context or {}
    owner = str(context.get("owner") or "").strip()
    repo = str(context.get("repo") or context.get("repository") or "").strip()
    if owner and repo:
        return {"owner": owner, "repo": repo}
    return extract_github_context(query)


def _news_steps(plan_id: str, year: int) -> List[PlanStep]:
    searches = (
        ("Search for breaking news", f"breaking news today {year}"),
        ("Search for technology news", f"technology news today {year}"),
        ("Search for business news", f"business news today {year}"),
    )
    steps = [
        _step(plan_id, index, description, WEB_SEARCH, {"query": query}, "search", 5)
        for index, (description, query) in enumerate(searches, start=1)
    ]
    steps.append(
        _step(
            plan_id,
            4,
            "Organizing and summarizing all news findings",
            SYNTHESIZE_RESULTS,
            {"type": "news_summary"},
            "synthesis",
            3,
        )
    )
    return steps


def _repo_steps(plan_id: str, owner: str, repo: str) -> List[PlanStep]:
    base = {"owner": owner, "repository": repo}
    return [
        _step(
            plan_id,
            1,
            "Fetch repository metadata and README",
            GITHUB_TOOLS,
            {"action": "get_repository", **base},
            "github",
            4,
        ),
        _step(
            plan_id,
            2,
            "Analyze repository structure and key files",
            GITHUB_TOOLS,
            {"action": "get_directory_structure", **base},
            "github",
            4,
        ),
        _step(
            plan_id,
            3,
            "Examine package.json and dependencies",
            GITHUB_TOOLS,
            {"action": "get_file_content", **base, "path": "package.json"},
            "github",
            3,
        ),
        _step(
            plan_id,
            4,
            "Synthesizing repository analysis",
            SYNTHESIZE_RESULTS,
            {"type": "repo_analysis"},
            "synthesis",
            4,
        ),
    ]


def _comprehensive_steps(plan_id: str, query: str) -> List[PlanStep]:
    return [
        _step(plan_id, 1, "Web search for current information", WEB_SEARCH, {"query": query}, "search", 5),
        _step(plan_id, 2, "Search knowledge base for related content", KNOWLEDGE_SEARCH, {"query": query}, "knowledge", 4),
        _step(
            plan_id,
            3,
            "Combining and organizing findings",
            SYNTHESIZE_RESULTS,
            {"type": "comprehensive_search"},
            "synthesis",
            3,
        ),
    ]


def _single_step(plan_id: str, query: str) -> List[PlanStep]:
    return [_step(plan_id, 1, "Processing request", WEB_SEARCH, {"query": query}, "search", 5)]


def build_plan(
    plan_type: str,
    query: str,
    context: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ExecutionPlan:
    """Expand a known plan type into its fixed step template.

    Unknown types get a single web search over ``query``. ``repo-analysis``
    needs an owner/repo pair (from ``context`` or a GitHub URL in ``query``)
    and raises ``ValueError`` without one.
    """
    plan_id = new_plan_id()
    year = (now or utc_now()).year

    if plan_type == "news-search":
        return ExecutionPlan(
            id=plan_id,
            title="Comprehensive News Research",
            description="Gathering latest news from multiple sources",
            plan_type=plan_type,
            steps=_news_steps(plan_id, year),
        )

    if plan_type == "repo-analysis":
        repo_ctx = _repo_context(query, context)
        if not repo_ctx:
            raise ValueError("repo-analysis plans need an owner and repo")
        return ExecutionPlan(
            id=plan_id,
            title="Repository Deep Analysis",
            description="Comprehensive analysis of repository structure and purpose",
            plan_type=plan_type,
            steps=_repo_steps(plan_id, repo_ctx["owner"], repo_ctx["repo"]),
        )

    if plan_type == "comprehensive-search":
        return ExecutionPlan(
            id=plan_id,
            title="Multi-Source Research",
            description="Searching across web and knowledge base",
            plan_type=plan_type,
            steps=_comprehensive_steps(plan_id, query),
        )

    if plan_type in ("github-commits", "github-repository"):
        repo_ctx = _repo_context(query, context)
        if repo_ctx:
            commits = plan_type == "github-commits"
            params = {
                "action": "get_commits" if commits else "get_repository",
                "owner": repo_ctx["owner"],
                "repository": repo_ctx["repo"],
            }
            return ExecutionPlan(
                id=plan_id,
                title="GitHub Repository Commits" if commits else "GitHub Repository Analysis",
                description="Fetching latest commits from repository" if commits else "Analyzing repository information",
                plan_type=plan_type,
                steps=[
                    _step(
                        plan_id,
                        1,
                        "Fetch latest commits" if commits else "Fetch repository information",
                        GITHUB_TOOLS,
                        params,
                        "github",
                        5,
                    )
                ],
            )
        logger.info("No repository named for %s plan; using a web search instead", plan_type)

    return ExecutionPlan(
        id=plan_id,
        title="Simple Query",
        description="Processing your request",
        plan_type=plan_type or "single-step",
        steps=_single_step(plan_id, query),
    )


def build_dynamic_plan(user_request: str, suggested_steps: Sequence[str], plan_type: str) -> ExecutionPlan:
    plan_id = new_plan_id("dynamic-plan")
    descriptions = [str(step).strip() for step in suggested_steps or [] if str(step).strip()]
    if not descriptions:
        descriptions = [user_request]
    steps = []
    for index, description in enumerate(descriptions, start=1):
        tool = infer_tool_from_step(description)
        steps.append(
            _step(
                plan_id,
                index,
                description,
                tool,
                infer_parameters_from_step(description),
                DEFAULT_REGISTRY.step_type(tool),
                DYNAMIC_STEP_DURATION,
            )
        )
    return ExecutionPlan(
        id=plan_id,
        title=f"AI-Generated Plan: {plan_type}",
        description=f"Dynamic execution plan for: {user_request}",
        plan_type=plan_type,
        steps=steps,
        is_adaptive=True,
    )


def build_adaptive_steps(queries: Sequence[str], reasoning: Optional[str] = None) -> List[PlanStep]:
    batch_id = new_plan_id("adaptive")
    cleaned = [str(query).strip() for query in queries or [] if str(query).strip()]
    return [
        PlanStep(
            id=f"{batch_id}-{index}",
            description=f"Search for: {query}",
            tool=WEB_SEARCH,
            parameters={"query": query},
            step_type="search",
            reasoning=reasoning,
            estimated_duration=DYNAMIC_STEP_DURATION,
        )
        for index, query in enumerate(cleaned[:MAX_ADAPTIVE_BATCH], start=1)
    ]
