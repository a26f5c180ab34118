"""Pytest configuration and fixtures."""

import os
import time

TEST_JWT_SECRET = "test-identity-provider-secret-0123456789abcdef"

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AUTH_JWT_KEY"] = TEST_JWT_SECRET
os.environ["AUTH_JWT_ALGORITHM"] = "HS256"
os.environ["OPENROUTER_API_KEY"] = "sk-or-server-default"
os.environ["TAVILY_API_KEY"] = "tvly-server-default"
os.environ["APP_ENV"] = "development"

from collections.abc import AsyncGenerator, Callable  # noqa: E402
from typing import Any  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from langchain_core.messages import AIMessageChunk, BaseMessage  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from allchat.core.config import settings  # noqa: E402
from allchat.core.database import Base  # noqa: E402
from allchat.core.rate_limit import limiter  # noqa: E402
from allchat.models.chat import Chat  # noqa: E402, F401
from allchat.models.message import Message  # noqa: E402, F401
from allchat.repositories.chat_repo import ChatRepository  # noqa: E402
from allchat.services.generation_service import GenerationService  # noqa: E402

# --- Test DB (SQLite in-memory) ---

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)
test_session_factory = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


@pytest.fixture(autouse=True)
async def setup_db() -> AsyncGenerator[None, None]:
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def reset_rate_limits() -> None:
    limiter.reset()


async def override_get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a test database session."""
    async with test_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a raw async session for repository tests."""
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def chat_repo(db_session: AsyncSession) -> ChatRepository:
    return ChatRepository(db_session)


# --- Fake upstream model ---


class FakeStreamingModel:
    """Stands in for a langchain chat model: streams preset chunks.

    ``error`` is raised after ``error_after`` chunks have been yielded.
    """

    def __init__(
        self,
        chunks: list[AIMessageChunk] | None = None,
        error: Exception | None = None,
        error_after: int = 0,
    ) -> None:
        self.chunks = chunks if chunks is not None else []
        self.error = error
        self.error_after = error_after
        self.calls: list[list[BaseMessage]] = []
        self.closed = False

    async def astream(self, messages: list[BaseMessage]) -> AsyncGenerator[AIMessageChunk, None]:
        self.calls.append(messages)
        try:
            for index, chunk in enumerate(self.chunks):
                if self.error is not None and index == self.error_after:
                    raise self.error
                yield chunk
            if self.error is not None and self.error_after >= len(self.chunks):
                raise self.error
        finally:
            self.closed = True


def words(*parts: str) -> list[AIMessageChunk]:
    """Content chunks for a fake model."""
    return [AIMessageChunk(content=part) for part in parts]


def reasoning(text: str) -> AIMessageChunk:
    """Reasoning-only chunk in the OpenRouter ``additional_kwargs`` shape."""
    return AIMessageChunk(content="", additional_kwargs={"reasoning": text})


class FakeModelFactory:
    """LLM factory handing out fake models, one per call (last one repeats)."""

    def __init__(self, *models: FakeStreamingModel) -> None:
        self.models = list(models) or [FakeStreamingModel(words("Hello"))]
        self.requests: list[tuple[str, str]] = []

    def __call__(self, model_id: str, api_key: str) -> Any:
        self.requests.append((model_id, api_key))
        index = min(len(self.requests) - 1, len(self.models) - 1)
        return self.models[index]


@pytest.fixture
def make_generation_service() -> Callable[..., GenerationService]:
    def factory(*models: FakeStreamingModel) -> GenerationService:
        return GenerationService(
            llm_config=settings.llm,
            search_config=settings.search,
            llm_factory=FakeModelFactory(*models),
        )

    return factory


# --- Token helpers ---


def make_token(sub: str = "user_1", expires_in: int = 3600, **claims: Any) -> str:
    """Issue a token the way the identity provider would."""
    payload = {"sub": sub, "exp": int(time.time()) + expires_in, **claims}
    return jwt.encode(payload, TEST_JWT_SECRET, algorithm="HS256")


def make_auth_headers(sub: str = "user_1") -> dict[str, str]:
    """Generate Authorization headers with a valid bearer token."""
    return {"Authorization": f"Bearer {make_token(sub)}"}


# --- App override & client fixtures ---


def get_test_app(generation: GenerationService | None = None):  # type: ignore[no-untyped-def]
    """Import app lazily and apply overrides."""
    from allchat.core.database import get_async_session
    from allchat.dependencies import get_generation_service
    from allchat.main import app

    app.dependency_overrides[get_async_session] = override_get_async_session
    if generation is not None:
        app.dependency_overrides[get_generation_service] = lambda: generation
    return app


@pytest.fixture
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client without auth headers."""
    application = get_test_app()
    transport = ASGITransport(app=application)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    application.dependency_overrides.clear()


@pytest.fixture
async def authed_client() -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with auth headers."""
    application = get_test_app()
    transport = ASGITransport(app=application)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers=make_auth_headers()
    ) as ac:
        yield ac
    application.dependency_overrides.clear()
