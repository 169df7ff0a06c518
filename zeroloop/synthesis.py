import logging
from typing import Any, Dict, Optional, Sequence


logger = logging.getLogger("uvicorn.error")

FALLBACK_PREFIX = "Based on research findings:\n\n"

SYNTHESIS_PROMPT = """Create a comprehensive, well-organized response based on all the research findings.

Original Request: {request}
All Research Content: {content}

Instructions:
- Organize information by importance and relevance
- Include specific details from the sources
- Structure with clear headings and bullet points
- Provide a balanced overview of the topic
- Include timestamps or dates when available
- Be factual and informative

Create a detailed, professional response that fully addresses the user's request."""

# Section headings for the local synthesis steps of the template plans.
_LOCAL_TEMPLATES = {
    "news_summary": (
        "# Today's News Summary",
        (("Breaking News", "No breaking news found"), ("Technology", "No tech news found"), ("Business", "No business news found")),
    ),
    "repo_analysis": (
        "# Repository Analysis",
        (("Overview", "Repository metadata"), ("Structure", "Directory structure"), ("Dependencies", "Package information")),
    ),
    "comprehensive_search": (
        "# Research Results",
        (("Web Findings", "Web search results"), ("Knowledge Base", "Knowledge base results")),
    ),
}


def fallback_synthesis(accumulated_content: Sequence[str]) -> str:
    return FALLBACK_PREFIX + "\n\n".join(accumulated_content)


def synthesize_local(kind: Optional[str], contents: Sequence[str]) -> str:
    """Aggregate findings for a synthesis step without calling the model."""
    template = _LOCAL_TEMPLATES.get(kind or "")
    if template is None:
        return "\n\n".join(content for content in contents if content)
    heading, sections = template
    parts = [heading]
    for index, (title, placeholder) in enumerate(sections):
        body = contents[index] if index < len(contents) and contents[index] else placeholder
        parts.append(f"## {title}\n{body}")
    return "\n\n".join(parts)


class Synthesizer:
    def __init__(self, model_client: Any):
        self.model_client = model_client

    async def synthesize(
        self,
        original_request: str,
        accumulated_content: Sequence[str],
        findings: Optional[Dict[str, Any]] = None,
    ) -> str:
        prompt = SYNTHESIS_PROMPT.format(request=original_request, content="\n\n".join(accumulated_content))
        try:
            text = await self.model_client.complete(
                [{"role": "user", "content": prompt}], temperature=0.4, max_tokens=1200
            )
        except Exception as exc:
            logger.warning("Final synthesis failed, returning collected findings: %s", exc)
            return fallback_synthesis(accumulated_content)
        if not text or not text.strip():
            logger.warning("Final synthesis returned no text, returning collected findings")
            return fallback_synthesis(accumulated_content)
        return text
