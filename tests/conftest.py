from pathlib import Path
from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from research_agent.config import AppSettings, EndpointConfig, SMTPConfig
from research_agent.db import Database
from research_agent.main import build_services, create_app
from tests.fakes import FakeLLMClient, FakeMailer, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://llm.test/v1")
    settings = AppSettings(
        llm_base_url=base_url,
        llm_api_key="test-key",
        chat_endpoint=EndpointConfig(base_url=base_url, model_id="test-chat"),
        vision_endpoint=EndpointConfig(base_url=base_url, model_id="test-vision"),
        embedding_endpoint=EndpointConfig(base_url=base_url, model_id="test-embed"),
        tavily_api_key=None,
        smtp=SMTPConfig(host="smtp.test", user="agent@test", password="secret", sender="agent@test"),
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: Optional[FakeLLMClient] = None,
        fake_tavily: Optional[FakeTavilyClient] = None,
        fake_mailer: Optional[FakeMailer] = None,
        config_path: Optional[Path] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeLLMClient()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            llm_client=llm_client,
            tavily_client=tavily_client,
            mailer=fake_mailer or FakeMailer(),
            config_path=cfg_path,
        )
        return app, cfg_path, llm_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
def services_factory(tmp_path: Path):
    """Tool services over a fresh database, without the HTTP app."""

    async def _factory(
        *,
        fake_llm: Optional[FakeLLMClient] = None,
        fake_tavily: Optional[FakeTavilyClient] = None,
        fake_mailer: Optional[FakeMailer] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        db = Database(settings.database_path)
        await db.init()
        return build_services(
            settings,
            db,
            fake_llm or FakeLLMClient(),
            fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key),
            fake_mailer or FakeMailer(),
        )

    return _factory
