from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from zeroloop.config import AppSettings, SettingsStore
from zeroloop.main import create_app
from tests.fakes import FakeModelClient, FakeToolInvoker


FUNCTIONS_URL = "http://functions.test/v1"


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        functions_base_url=FUNCTIONS_URL,
        api_key="anon-key",
        access_token="user-token",
        provider_tokens={"github": "gh-token"},
        tool_retry_backoff_s=0.0,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(make_settings(tmp_path))


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_model: FakeModelClient | None = None,
        fake_tools: FakeToolInvoker | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        model_client = fake_model or FakeModelClient()
        tool_invoker = fake_tools or FakeToolInvoker()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, model_client=model_client, tool_invoker=tool_invoker, config_path=cfg_path)
        return app, cfg_path, model_client, tool_invoker

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, model_client, tool_invoker = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_model = model_client  # type: ignore[attr-defined]
            http_client.fake_tools = tool_invoker  # type: ignore[attr-defined]
            yield http_client
