import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

import httpx

from .config import AppSettings, SettingsStore
from .db import Database
from .schemas import ToolInvocationResult, normalize_tool_payload


logger = logging.getLogger("uvicorn.error")

WEB_SEARCH = "web-search"
WEB_SCRAPER = "web-scraper"
GITHUB_TOOLS = "github-tools"
JIRA_TOOLS = "jira-tools"
KNOWLEDGE_SEARCH = "knowledge-search"
SYNTHESIZE_RESULTS = "synthesize-results"

LEGACY_PREFIX = "execute_"
TOOL_ALIASES = {
    "knowledge-search-v2": KNOWLEDGE_SEARCH,
    "github": GITHUB_TOOLS,
    "search": WEB_SEARCH,
    "synthesize_results": SYNTHESIZE_RESULTS,
}


class ToolConfigurationError(RuntimeError):
    """Tool cannot be called at all (unknown tool, missing session)."""


@dataclass(frozen=True)
class ToolSpec:
    tool_id: str
    endpoint: str
    description: str
    step_type: str = "tool"
    token_provider: Optional[str] = None
    # Some functions take the parameters as the request body itself.
    flat_body: bool = False


DEFAULT_TOOLS = (
    ToolSpec(WEB_SEARCH, "web-search", "Search the web for current information", "search"),
    ToolSpec(WEB_SCRAPER, "web-scraper", "Fetch and extract the content of a web page", "search"),
    ToolSpec(GITHUB_TOOLS, "github-tools", "Query GitHub repositories, files and commits", "github", "github"),
    ToolSpec(JIRA_TOOLS, "jira-tools", "Search and read Jira issues", "tool", "jira"),
    ToolSpec(KNOWLEDGE_SEARCH, "knowledge-proxy", "Search the user's knowledge base", "knowledge", flat_body=True),
    ToolSpec("google-drive", "google-drive-tools", "Search Google Drive documents", "tool", "google"),
    ToolSpec("gmail", "gmail-tools", "Search Gmail messages", "tool", "google"),
    ToolSpec("google-calendar", "google-calendar-tools", "Read Google Calendar events", "tool", "google"),
)


def normalize_tool_id(tool: str) -> str:
    cleaned = str(tool or "").strip().lower()
    if cleaned.startswith(LEGACY_PREFIX):
        cleaned = cleaned[len(LEGACY_PREFIX):]
    return TOOL_ALIASES.get(cleaned, cleaned)


class ToolRegistry:
    def __init__(self, specs: Iterable[ToolSpec] = DEFAULT_TOOLS):
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        self._specs[normalize_tool_id(spec.tool_id)] = spec

    def get(self, tool: str) -> ToolSpec:
        spec = self._specs.get(normalize_tool_id(tool))
        if spec is None:
            raise ToolConfigurationError(f"Unknown tool: {tool}")
        return spec

    def __contains__(self, tool: object) -> bool:
        return isinstance(tool, str) and normalize_tool_id(tool) in self._specs

    def tool_ids(self) -> list[str]:
        return sorted(self._specs)

    def step_type(self, tool: str) -> str:
        spec = self._specs.get(normalize_tool_id(tool))
        return spec.step_type if spec else "tool"

    def describe(self) -> list[dict]:
        return [
            {
                "id": tool_id,
                "endpoint": self._specs[tool_id].endpoint,
                "description": self._specs[tool_id].description,
                "step_type": self._specs[tool_id].step_type,
                "token_provider": self._specs[tool_id].token_provider,
            }
            for tool_id in self.tool_ids()
        ]


DEFAULT_REGISTRY = ToolRegistry()


class ToolInvoker:
    """One HTTP call per invocation against the hosted tool functions."""

    def __init__(
        self,
        settings_store: SettingsStore,
        registry: Optional[ToolRegistry] = None,
        audit: Optional[Database] = None,
        session_provider: Optional[Callable[[], Optional[str]]] = None,
        token_provider: Optional[Callable[[str], Optional[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings_store = settings_store
        self.registry = registry or ToolRegistry()
        self.audit = audit
        self._session_provider = session_provider
        self._token_provider = token_provider
        # Shared pool so consecutive steps reuse connections.
        self.client = httpx.AsyncClient(
            timeout=settings_store.settings.tool_timeout_s,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
            transport=transport,
        )

    @property
    def settings(self) -> AppSettings:
        return self.settings_store.settings

    def _access_token(self) -> Optional[str]:
        if self._session_provider is not None:
            return self._session_provider()
        return self.settings.access_token

    def _provider_token(self, provider: str) -> Optional[str]:
        if self._token_provider is not None:
            return self._token_provider(provider)
        return self.settings.provider_tokens.get(provider)

    def _headers(self, spec: ToolSpec, execution_id: str) -> Dict[str, str]:
        token = self._access_token()
        if not token:
            raise ToolConfigurationError("User not authenticated: no access token for tool calls")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
            "x-execution-id": execution_id,
        }
        if self.settings.api_key:
            headers["apikey"] = self.settings.api_key
        if spec.token_provider:
            provider_token = self._provider_token(spec.token_provider)
            if provider_token:
                headers["x-provider-token"] = provider_token
            else:
                logger.warning("Token required for %s but not found; calling %s without it", spec.token_provider, spec.tool_id)
        return headers

    def _body(self, spec: ToolSpec, parameters: Dict[str, Any], execution_id: str) -> Dict[str, Any]:
        if spec.flat_body:
            return {**parameters, "executionId": execution_id}
        return {"action": spec.tool_id, "parameters": parameters, "executionId": execution_id}

    async def invoke(self, tool: str, parameters: Optional[Dict[str, Any]] = None) -> ToolInvocationResult:
        spec = self.registry.get(tool)
        params = dict(parameters or {})
        execution_id = str(uuid.uuid4())
        headers = self._headers(spec, execution_id)
        url = f"{self.settings.functions_base_url.rstrip('/')}/{spec.endpoint}"
        await self._audit_start(execution_id, spec, params)
        result = await self._post(url, self._body(spec, params, execution_id), headers)
        result.execution_id = execution_id
        await self._audit_finish(execution_id, result)
        return result

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> ToolInvocationResult:
        """POST with bounded retry on transport errors and 5xx responses."""
        max_retries = max(0, self.settings.tool_max_retries)
        backoff = max(0.0, self.settings.tool_retry_backoff_s)
        attempt = 0
        while True:
            try:
                resp = await self.client.post(url, json=payload, headers=headers, timeout=self.settings.tool_timeout_s)
                resp.raise_for_status()
                break
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status >= 500 and attempt < max_retries:
                    attempt += 1
                    await asyncio.sleep(backoff * attempt)
                    continue
                detail: Any
                try:
                    detail = e.response.json()
                except Exception:
                    detail = e.response.text
                if isinstance(detail, dict):
                    detail = detail.get("error") or detail.get("message") or detail
                return ToolInvocationResult(success=False, error=f"HTTP {status}: {detail}", status_code=status)
            except httpx.RequestError as e:
                if attempt < max_retries:
                    attempt += 1
                    await asyncio.sleep(backoff * attempt)
                    continue
                return ToolInvocationResult(success=False, error=f"Request failed: {e}")
        try:
            body = resp.json()
        except ValueError:
            return ToolInvocationResult(success=False, error="Tool returned a non-JSON response", status_code=resp.status_code)
        if isinstance(body, dict):
            if body.get("success") is False:
                return ToolInvocationResult(
                    success=False,
                    error=str(body.get("error") or "Tool execution failed"),
                    status_code=resp.status_code,
                )
            body = {k: v for k, v in body.items() if k != "success"}
        return ToolInvocationResult(success=True, data=normalize_tool_payload(body), status_code=resp.status_code)

    async def _audit_start(self, execution_id: str, spec: ToolSpec, parameters: Dict[str, Any]) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.record_execution(execution_id, spec.tool_id, spec.endpoint, parameters)
        except Exception as exc:
            logger.warning("Failed to record execution %s: %s", execution_id, exc)

    async def _audit_finish(self, execution_id: str, result: ToolInvocationResult) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.update_execution(
                execution_id,
                "completed" if result.success else "failed",
                result=result.data.model_dump() if result.data is not None else None,
                error=result.error,
            )
        except Exception as exc:
            logger.warning("Failed to update execution record %s: %s", execution_id, exc)

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
