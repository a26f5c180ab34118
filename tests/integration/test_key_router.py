"""Integration tests for provider key verification endpoints."""

from collections.abc import AsyncGenerator

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from allchat.core.config import settings
from allchat.dependencies import get_key_service
from allchat.services.key_service import KeyService
from tests.conftest import get_test_app, make_auth_headers


def _provider(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/auth/key"):
        if request.headers["Authorization"] == "Bearer sk-or-good":
            return httpx.Response(200, json={"data": {"label": "mine"}})
        return httpx.Response(401, json={"error": {"message": "Invalid API key"}})
    if b"tvly-good" in request.content:
        return httpx.Response(200, json={"results": []})
    return httpx.Response(401, json={"detail": {"error": "Unauthorized"}})


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    provider = httpx.AsyncClient(transport=httpx.MockTransport(_provider))
    application = get_test_app()
    application.dependency_overrides[get_key_service] = lambda: KeyService(
        settings.llm, client=provider
    )
    async with AsyncClient(
        transport=ASGITransport(app=application),
        base_url="http://test",
        headers=make_auth_headers(),
    ) as ac:
        yield ac
    application.dependency_overrides.clear()
    await provider.aclose()


class TestVerifyOpenRouter:
    async def test_valid(self, client: AsyncClient) -> None:
        resp = await client.post("/api/keys/verify-openrouter", json={"apiKey": "sk-or-good"})
        assert resp.status_code == 200
        assert resp.json()["data"] == {"valid": True, "message": "OpenRouter key is valid."}

    async def test_invalid(self, client: AsyncClient) -> None:
        resp = await client.post("/api/keys/verify-openrouter", json={"apiKey": "sk-or-bad"})
        assert resp.json()["data"] == {"valid": False, "message": "Invalid API key"}

    async def test_empty_key_rejected(self, client: AsyncClient) -> None:
        resp = await client.post("/api/keys/verify-openrouter", json={"apiKey": ""})
        assert resp.status_code == 422


class TestVerifyTavily:
    async def test_valid(self, client: AsyncClient) -> None:
        resp = await client.post("/api/keys/verify-tavily", json={"api_key": "tvly-good"})
        assert resp.json()["data"]["valid"] is True

    async def test_invalid(self, client: AsyncClient) -> None:
        resp = await client.post("/api/keys/verify-tavily", json={"apiKey": "tvly-bad"})
        assert resp.json()["data"] == {"valid": False, "message": "Unauthorized"}


async def test_requires_sign_in(async_client: AsyncClient) -> None:
    resp = await async_client.post("/api/keys/verify-tavily", json={"apiKey": "tvly-good"})
    assert resp.status_code == 401
