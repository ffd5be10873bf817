import os
import tempfile
from pathlib import Path

# must be set before aether modules read settings
_TMP = tempfile.mkdtemp(prefix="aether-tests-")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP}/default.db")

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from aether.core.config import Settings
from aether.core.database import Base, create_engine, create_session_maker
from aether.main import create_app
from aether.models import UserRole
from aether.services import build_services
from tests.fakes import FakeClock, FakeOpenAIClient, FakeProviderAdapter, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> Settings:
    settings = Settings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        secret_key="test-secret-key",
        gemini_api_key="env-gemini-key",
        openai_api_key="env-openai-key",
        tavily_api_key="env-tavily-key",
        groq_api_key=None,
        openrouter_api_key=None,
        moonshot_api_key=None,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def session_maker(settings: Settings):
    engine = create_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_tavily() -> FakeTavilyClient:
    return FakeTavilyClient()


@pytest.fixture
def fake_openai() -> FakeOpenAIClient:
    return FakeOpenAIClient()


@pytest.fixture
def fake_provider(fake_openai: FakeOpenAIClient) -> FakeProviderAdapter:
    return FakeProviderAdapter(openai_client=fake_openai)


@pytest.fixture
def services(settings, session_maker, clock, fake_provider, fake_tavily, fake_openai):
    return build_services(
        settings,
        session_maker,
        providers=fake_provider,
        tavily_factory=lambda api_key: fake_tavily,
        image_client_factory=lambda api_key: fake_openai,
        clock=clock,
    )


@pytest.fixture
async def user(services):
    return await services.users.create_user(email="ada@example.com", name="Ada", role=UserRole.FREE)


@pytest.fixture
async def guest(services):
    return await services.users.get_or_create_guest("anon-key-1")


@pytest.fixture
def app_factory(tmp_path: Path, clock: FakeClock):
    def _factory(*, fake_provider: FakeProviderAdapter | None = None, fake_tavily: FakeTavilyClient | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        provider = fake_provider or FakeProviderAdapter()
        tavily = fake_tavily or FakeTavilyClient()
        app = create_app(
            settings,
            providers=provider,
            tavily_factory=lambda api_key: tavily,
            image_client_factory=lambda api_key: provider.openai,
            clock=clock,
        )
        return app, provider, tavily

    return _factory


@pytest.fixture
async def client(app_factory):
    app, provider, tavily = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_provider = provider  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily  # type: ignore[attr-defined]
            yield http_client
