import json
import logging
from dataclasses import dataclass
from typing import Any, List, Sequence

from .llm import extract_json_object
from .schemas import PlanStep


logger = logging.getLogger("uvicorn.error")

CONTENT_TAIL_CHARS = 1000

ADAPTATION_PROMPT = """Analyze the content gathered so far and determine if we need additional searches.

Original Request: {request}
Content Gathered: {content}
Remaining Steps: {remaining}

Based on this analysis, do we have sufficient information to provide a comprehensive answer?
Respond with JSON: {{"needsAdaptation": boolean, "reasoning": "explanation"}}"""

QUERY_PROMPT = """Based on the content gathered so far, suggest 1-2 specific additional search queries.

Original Request: {request}
Content So Far: {content}
Gap Analysis: {reasoning}

Suggest specific search queries that would fill the information gaps.
Respond with JSON: {{"queries": ["query1", "query2"]}}"""


@dataclass
class AdaptationDecision:
    needs_more_steps: bool
    reasoning: str


def _parse_object(reply: str) -> Any:
    raw = extract_json_object(reply)
    if raw is None:
        return None
    return json.loads(raw)


class PlanAdapter:
    """Asks the model whether an adaptive plan should grow, and with which searches."""

    def __init__(self, model_client: Any):
        self.model_client = model_client

    async def analyze(
        self,
        original_request: str,
        accumulated_content: Sequence[str],
        remaining_steps: Sequence[PlanStep],
    ) -> AdaptationDecision:
        if not accumulated_content:
            return AdaptationDecision(True, "No content gathered yet, need more searches")
        prompt = ADAPTATION_PROMPT.format(
            request=original_request,
            content="\n".join(accumulated_content)[-CONTENT_TAIL_CHARS:],
            remaining=", ".join(step.description for step in remaining_steps),
        )
        try:
            reply = await self.model_client.complete(
                [{"role": "user", "content": prompt}], temperature=0.3, max_tokens=200
            )
            data = _parse_object(reply)
        except Exception as exc:
            logger.warning("Adaptation analysis failed: %s", exc)
            data = None
        if isinstance(data, dict) and isinstance(data.get("needsAdaptation"), bool):
            return AdaptationDecision(data["needsAdaptation"], str(data.get("reasoning") or ""))
        return AdaptationDecision(False, "Continue with current plan")

    async def propose_queries(
        self,
        original_request: str,
        accumulated_content: Sequence[str],
        reasoning: str,
    ) -> List[str]:
        prompt = QUERY_PROMPT.format(
            request=original_request,
            content="\n".join(accumulated_content),
            reasoning=reasoning,
        )
        try:
            reply = await self.model_client.complete(
                [{"role": "user", "content": prompt}], temperature=0.4, max_tokens=300
            )
            data = _parse_object(reply)
        except Exception as exc:
            logger.warning("Adaptive step generation failed: %s", exc)
            return []
        if not isinstance(data, dict) or not isinstance(data.get("queries"), list):
            return []
        return [str(query).strip() for query in data["queries"] if isinstance(query, str) and query.strip()]
