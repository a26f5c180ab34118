"""Integration tests for chat management, sharing and guest migration."""

import pytest
from httpx import AsyncClient

from allchat.repositories.chat_repo import ChatRepository
from tests.conftest import make_auth_headers, test_session_factory


async def _seed_chat(user_id: str = "user_1", turns: int = 2) -> tuple[int, list[int]]:
    async with test_session_factory() as session:
        repo = ChatRepository(session)
        chat = await repo.create_chat(user_id=user_id, title="Seeded", model_id="openai/gpt-4o")
        ids = []
        for n in range(turns):
            user = await repo.create_message(chat.id, "user", f"q{n}")
            ai = await repo.create_message(chat.id, "ai", f"a{n}", reply_to_id=user.id)
            ids.extend([user.id, ai.id])
        await repo.commit()
        return chat.id, ids


@pytest.fixture
async def seeded() -> tuple[int, list[int]]:
    return await _seed_chat()


class TestChats:
    async def test_list_and_get(self, authed_client: AsyncClient, seeded: tuple[int, list[int]]) -> None:
        chat_id, _ = seeded

        listing = await authed_client.get("/api/chats")
        detail = await authed_client.get(f"/api/chats/{chat_id}")

        assert [c["id"] for c in listing.json()["data"]] == [chat_id]
        data = detail.json()["data"]
        assert data["chat"]["title"] == "Seeded"
        assert [m["content"] for m in data["messages"]] == ["q0", "a0", "q1", "a1"]

    async def test_other_users_chat_is_forbidden(self, authed_client: AsyncClient) -> None:
        chat_id, _ = await _seed_chat(user_id="user_2")

        resp = await authed_client.get(f"/api/chats/{chat_id}")

        assert resp.status_code == 403
        assert resp.json()["code"] == "AUTHORIZATION_ERROR"

    async def test_rename(self, authed_client: AsyncClient, seeded: tuple[int, list[int]]) -> None:
        chat_id, _ = seeded

        resp = await authed_client.patch(f"/api/chats/{chat_id}", json={"title": "Renamed"})

        assert resp.status_code == 200
        assert resp.json()["data"]["title"] == "Renamed"

    async def test_rename_rejects_empty_title(
        self, authed_client: AsyncClient, seeded: tuple[int, list[int]]
    ) -> None:
        chat_id, _ = seeded
        resp = await authed_client.patch(f"/api/chats/{chat_id}", json={"title": ""})
        assert resp.status_code == 422

    async def test_delete_chat(self, authed_client: AsyncClient, seeded: tuple[int, list[int]]) -> None:
        chat_id, _ = seeded

        resp = await authed_client.delete(f"/api/chats/{chat_id}")

        assert resp.json()["data"] == {"deleted_chat_id": chat_id, "promoted_chat_ids": []}
        assert (await authed_client.get(f"/api/chats/{chat_id}")).status_code == 404


class TestMessages:
    async def test_delete_user_message_with_reply(
        self, authed_client: AsyncClient, seeded: tuple[int, list[int]]
    ) -> None:
        chat_id, ids = seeded

        resp = await authed_client.delete(f"/api/messages/{ids[0]}")

        data = resp.json()["data"]
        assert sorted(data["deleted_ids"]) == ids[:2]
        assert data["chat_deleted"] is False
        detail = (await authed_client.get(f"/api/chats/{chat_id}")).json()["data"]
        assert [m["content"] for m in detail["messages"]] == ["q1", "a1"]

    async def test_deleting_last_message_deletes_chat(self, authed_client: AsyncClient) -> None:
        chat_id, ids = await _seed_chat(turns=1)

        data = (await authed_client.delete(f"/api/messages/{ids[0]}")).json()["data"]

        assert data["chat_deleted"] is True
        assert data["deleted_chat_id"] == chat_id
        assert (await authed_client.get("/api/chats")).json()["data"] == []


class TestSharing:
    async def test_share_then_read_publicly(
        self,
        authed_client: AsyncClient,
        async_client: AsyncClient,
        seeded: tuple[int, list[int]],
    ) -> None:
        chat_id, _ = seeded

        share_id = (await authed_client.post(f"/api/chats/{chat_id}/share")).json()["data"]["share_id"]
        public = await async_client.get(f"/api/share/{share_id}")

        assert public.status_code == 200
        assert public.json()["data"]["chat"]["id"] == chat_id

    async def test_unshare(
        self,
        authed_client: AsyncClient,
        async_client: AsyncClient,
        seeded: tuple[int, list[int]],
    ) -> None:
        chat_id, _ = seeded
        share_id = (await authed_client.post(f"/api/chats/{chat_id}/share")).json()["data"]["share_id"]

        await authed_client.delete(f"/api/chats/{chat_id}/share")

        assert (await async_client.get(f"/api/share/{share_id}")).status_code == 404


class TestMigrateGuest:
    async def test_imports_guest_chats(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.post(
            "/api/chats/migrate-guest",
            json={
                "guestChats": [
                    {
                        "title": "From my phone",
                        "modelId": "openai/gpt-4o",
                        "messages": [
                            {"role": "user", "content": "hi"},
                            {"role": "ai", "content": "hello", "usedWebSearch": False},
                        ],
                    }
                ]
            },
        )

        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["migrated_count"] == 1
        detail = (await authed_client.get(f"/api/chats/{data['chat_ids'][0]}")).json()["data"]
        assert detail["chat"]["title"] == "From my phone"
        assert detail["messages"][1]["reply_to_id"] == detail["messages"][0]["id"]

    async def test_requires_at_least_one_chat(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.post("/api/chats/migrate-guest", json={"guestChats": []})
        assert resp.status_code == 422

    async def test_migrated_chats_belong_to_caller(self, async_client: AsyncClient) -> None:
        resp = await async_client.post(
            "/api/chats/migrate-guest",
            json={"guestChats": [{"title": "t", "messages": [{"role": "user", "content": "x"}]}]},
            headers=make_auth_headers("user_9"),
        )
        chat_id = resp.json()["data"]["chat_ids"][0]

        async with test_session_factory() as session:
            chat = await ChatRepository(session).find_chat_by_id(chat_id)

        assert chat is not None
        assert chat.user_id == "user_9"
