import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "ZEROLOOP_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_MASK = "********"

ModelProvider = Literal["openai", "local", "npaw"]


class ModelSettings(BaseModel):
    provider: ModelProvider = "openai"
    selected_model: Optional[str] = None
    local_model_url: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    # Hosted functions gateway (tools + model proxy live behind it)
    functions_base_url: str = "http://127.0.0.1:54321/functions/v1"
    api_key: Optional[str] = None
    access_token: Optional[str] = None

    model: ModelSettings = Field(default_factory=ModelSettings)
    model_endpoint: str = "ai-model-proxy"
    model_timeout_s: float = 60.0

    tool_timeout_s: float = 60.0
    tool_max_retries: int = 0
    tool_retry_backoff_s: float = 0.5
    provider_tokens: Dict[str, str] = Field(default_factory=dict)

    max_adaptive_steps: int = 4
    history_window: int = 10
    max_plan_sessions: int = 100

    database_path: str = "zeroloop.db"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("api_key", "access_token"):
            if data.get(key):
                data[key] = SECRET_MASK
        if data.get("provider_tokens"):
            data["provider_tokens"] = {name: SECRET_MASK for name in data["provider_tokens"]}
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "functions_base_url": os.getenv("ZEROLOOP_FUNCTIONS_URL"),
        "api_key": os.getenv("ZEROLOOP_API_KEY"),
        "access_token": os.getenv("ZEROLOOP_ACCESS_TOKEN"),
        "model_provider": os.getenv("MODEL_PROVIDER"),
        "selected_model": os.getenv("MODEL_NAME"),
        "local_model_url": os.getenv("LOCAL_MODEL_URL"),
        "model_endpoint": os.getenv("MODEL_ENDPOINT"),
        "model_timeout_s": os.getenv("MODEL_TIMEOUT_S"),
        "tool_timeout_s": os.getenv("TOOL_TIMEOUT_S"),
        "tool_max_retries": os.getenv("TOOL_MAX_RETRIES"),
        "tool_retry_backoff_s": os.getenv("TOOL_RETRY_BACKOFF_S"),
        "github_token": os.getenv("GITHUB_TOKEN"),
        "jira_token": os.getenv("JIRA_TOKEN"),
        "google_token": os.getenv("GOOGLE_TOKEN"),
        "max_adaptive_steps": os.getenv("MAX_ADAPTIVE_STEPS"),
        "history_window": os.getenv("HISTORY_WINDOW"),
        "max_plan_sessions": os.getenv("MAX_PLAN_SESSIONS"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("tool_max_retries", "max_adaptive_steps", "history_window", "max_plan_sessions", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("model_timeout_s", "tool_timeout_s", "tool_retry_backoff_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    model: Dict[str, Any] = {}
    if "model_provider" in cleaned:
        model["provider"] = str(cleaned.pop("model_provider")).strip().lower()
    for key in ("selected_model", "local_model_url"):
        if key in cleaned:
            model[key] = cleaned.pop(key)
    if model:
        cleaned["model"] = model
    tokens: Dict[str, str] = {}
    for provider in ("github", "jira", "google"):
        value = cleaned.pop(f"{provider}_token", None)
        if value:
            tokens[provider] = value
    if tokens:
        cleaned["provider_tokens"] = tokens
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_nested(low: Dict[str, Any], high: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge where dict-valued keys (model, provider_tokens) are merged one level deep."""
    merged = {**low, **high}
    for key in ("model", "provider_tokens"):
        low_val = low.get(key)
        high_val = high.get(key)
        if isinstance(low_val, dict) and isinstance(high_val, dict):
            merged[key] = {**low_val, **high_val}
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge_nested(file_data, env_data)
    else:
        merged = _merge_nested(env_data, file_data)
    if not merged.get("access_token") and env_data.get("access_token"):
        merged["access_token"] = env_data["access_token"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))


SettingsListener = Callable[[AppSettings, AppSettings], None]


class SettingsStore:
    """Current settings plus explicit change notification for their consumers."""

    def __init__(self, settings: Optional[AppSettings] = None):
        self._settings = settings or AppSettings()
        self._listeners: List[SettingsListener] = []

    @property
    def settings(self) -> AppSettings:
        return self._settings

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def update(self, **changes: Any) -> AppSettings:
        previous = self._settings
        data = previous.model_dump()
        model_changes = changes.pop("model", None)
        if isinstance(model_changes, ModelSettings):
            model_changes = model_changes.model_dump()
        if isinstance(model_changes, dict):
            data["model"] = {**data["model"], **model_changes}
        data.update(changes)
        # Validate before swapping so listeners never see a half-applied config.
        updated = AppSettings(**data)
        self._settings = updated
        for listener in list(self._listeners):
            listener(previous, updated)
        return updated

    def replace(self, settings: AppSettings) -> AppSettings:
        return self.update(**settings.model_dump())
