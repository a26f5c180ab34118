"""Integration tests for AuthMiddleware."""

import time

import jwt
from httpx import AsyncClient

from tests.conftest import TEST_JWT_SECRET, make_token


class TestPublicPaths:
    """Tests that public paths are accessible without auth."""

    async def test_health_check(self, async_client: AsyncClient) -> None:
        resp = await async_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"status": "healthy"}

    async def test_root(self, async_client: AsyncClient) -> None:
        resp = await async_client.get("/")
        assert resp.status_code == 200

    async def test_docs(self, async_client: AsyncClient) -> None:
        resp = await async_client.get("/docs")
        assert resp.status_code == 200

    async def test_shared_chat_needs_no_token(self, async_client: AsyncClient) -> None:
        resp = await async_client.get("/api/share/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["code"] == "SHARE_NOT_FOUND"

    async def test_preflight_passes(self, async_client: AsyncClient) -> None:
        resp = await async_client.options(
            "/api/chats",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
            },
        )
        assert resp.status_code != 401


class TestProtectedPaths:
    """Tests that protected paths require a valid identity provider token."""

    async def test_without_token(self, async_client: AsyncClient) -> None:
        resp = await async_client.get("/api/chats")
        assert resp.status_code == 401
        data = resp.json()
        assert data["status"] == 401
        assert data["code"] == "MISSING_TOKEN"

    async def test_with_invalid_token(self, async_client: AsyncClient) -> None:
        resp = await async_client.get(
            "/api/chats",
            headers={"Authorization": "Bearer invalid.token.here"},
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "INVALID_TOKEN"

    async def test_with_expired_token(self, async_client: AsyncClient) -> None:
        resp = await async_client.get(
            "/api/chats",
            headers={"Authorization": f"Bearer {make_token(expires_in=-60)}"},
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "TOKEN_EXPIRED"

    async def test_with_foreign_signature(self, async_client: AsyncClient) -> None:
        token = jwt.encode(
            {"sub": "user_1", "exp": int(time.time()) + 60},
            "some-other-secret-that-is-long-enough-to-sign",
            algorithm="HS256",
        )
        resp = await async_client.get("/api/chats", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "INVALID_TOKEN"

    async def test_without_subject(self, async_client: AsyncClient) -> None:
        token = jwt.encode({"exp": int(time.time()) + 60}, TEST_JWT_SECRET, algorithm="HS256")
        resp = await async_client.get("/api/chats", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "INVALID_TOKEN"

    async def test_with_valid_token(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.get("/api/chats")
        assert resp.status_code == 200
        assert resp.json()["data"] == []
