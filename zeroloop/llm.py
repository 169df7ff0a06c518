import json
import re
from typing import Any, Dict, List, Optional

import httpx

from .config import AppSettings, ModelSettings, SettingsStore


ALLOWED_ROLES = {"system", "user", "assistant"}
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class ModelCallError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def extract_json_object(text: str) -> Optional[str]:
    """Return the outermost {...} span of a model reply, if any."""
    match = _JSON_OBJECT_RE.search(text or "")
    return match.group(0) if match else None


def _normalize_error_text(detail: str) -> str:
    text = detail or ""
    for _ in range(2):
        try:
            parsed = json.loads(text)
        except Exception:
            break
        if isinstance(parsed, dict):
            found = False
            for key in ("error", "detail", "message"):
                val = parsed.get(key)
                if isinstance(val, str) and val.strip():
                    text = val
                    found = True
                    break
            if not found:
                break
        elif isinstance(parsed, str):
            text = parsed
        else:
            break
    return text


class ModelClient:
    """Text completion through the hosted model proxy function."""

    def __init__(self, settings_store: SettingsStore, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = settings_store.settings
        self._apply(settings)
        self.client = httpx.AsyncClient(timeout=settings.model_timeout_s, transport=transport)
        self._unsubscribe = settings_store.subscribe(self._on_settings_changed)

    def _apply(self, settings: AppSettings) -> None:
        self.base_url = settings.functions_base_url.rstrip("/")
        self.endpoint = settings.model_endpoint.strip("/")
        self.model_settings: ModelSettings = settings.model
        self.api_key = settings.api_key
        self.access_token = settings.access_token
        self.timeout_s = settings.model_timeout_s

    def _on_settings_changed(self, previous: AppSettings, current: AppSettings) -> None:
        self._apply(current)

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.endpoint}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        bearer = self.access_token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, str]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, str]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=True)
            if not content.strip():
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _build_payload(self, messages: List[Dict[str, str]], temperature: float, max_tokens: int) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "provider": self.model_settings.provider,
        }
        if self.model_settings.selected_model:
            payload["model"] = self.model_settings.selected_model
        if self.model_settings.provider == "local" and self.model_settings.local_model_url:
            payload["localModelUrl"] = self.model_settings.local_model_url
        return payload

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    @staticmethod
    def _extract_text(data: Any) -> str:
        if isinstance(data, str):
            return data
        if not isinstance(data, dict):
            return ""
        for key in ("message", "content"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
        choices = data.get("choices") or []
        if choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            content = message.get("content")
            if isinstance(content, str):
                return content
        return ""

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        temperature: float = 0.3,
        max_tokens: int = 500,
    ) -> str:
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        payload = self._build_payload(cleaned, temperature, max_tokens)
        try:
            resp = await self.client.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout_s)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _normalize_error_text(self._extract_error_detail(exc.response))
            raise ModelCallError(f"model call failed ({exc.response.status_code}): {detail}", exc.response.status_code)
        except httpx.RequestError as exc:
            raise ModelCallError(f"model call failed: {exc}")
        try:
            data = resp.json()
        except ValueError:
            return resp.text
        text = self._extract_text(data)
        if not text and isinstance(data, dict) and data.get("error"):
            raise ModelCallError(_normalize_error_text(json.dumps(data["error"], ensure_ascii=True)))
        return text

    async def close(self) -> None:
        self._unsubscribe()
        if not self.client.is_closed:
            await self.client.aclose()
