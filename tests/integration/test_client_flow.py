"""End-to-end: client store and API client against the real application."""

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from allchat.client.api_client import ChatApiClient
from allchat.client.state_store import ConversationStore, InteractionState
from allchat.client.storage import MemoryStorage
from allchat.core.config import settings
from allchat.services.generation_service import GenerationService
from tests.conftest import FakeModelFactory, FakeStreamingModel, get_test_app, make_token, words


@pytest.fixture
def model() -> FakeStreamingModel:
    return FakeStreamingModel(words("2 + 2 ", "= 4"))


@pytest.fixture
async def api(model: FakeStreamingModel) -> AsyncGenerator[ChatApiClient, None]:
    generation = GenerationService(
        settings.llm, settings.search, llm_factory=FakeModelFactory(model)
    )
    application = get_test_app(generation=generation)
    http = AsyncClient(transport=ASGITransport(app=application), base_url="http://test")
    client = ChatApiClient("http://test", token=make_token(), client=http)
    yield client
    await client.aclose()
    application.dependency_overrides.clear()


class TestSignedIn:
    async def test_send_edit_and_reload(self, api: ChatApiClient) -> None:
        store = ConversationStore(api)

        sent = await store.send_message("2+2?")

        assert sent.state is InteractionState.CONFIRMED
        chat_id = store.active_chat
        assert isinstance(chat_id, int)
        user, reply = store.messages()
        assert (user.content, reply.content) == ("2+2?", "2 + 2 = 4")
        assert reply.reply_to_id == user.id

        edited = await store.edit_message(user.id, "3+3?")

        assert edited.state is InteractionState.CONFIRMED
        assert [m.content for m in store.messages()] == ["3+3?", "2 + 2 = 4"]
        assert store.messages()[0].edit_count == 1

        fresh = ConversationStore(api)
        await fresh.load_chats()
        await fresh.open_chat(chat_id)
        assert [c.key for c in fresh.chats] == [chat_id]
        assert [(m.id, m.content) for m in fresh.messages()] == [
            (m.id, m.content) for m in store.messages()
        ]

    async def test_failed_reply_rolls_back(self, api: ChatApiClient, model: FakeStreamingModel) -> None:
        store = ConversationStore(api)
        await store.send_message("first")
        model.error = RuntimeError("boom")
        model.error_after = 1

        failed = await store.send_message("second")

        assert failed.state is InteractionState.ROLLED_BACK
        assert [m.content for m in store.messages()] == ["first", "2 + 2 = 4"]
        assert store.input_text == "second"
        assert store.notifications[-1].code == "INTERNAL_ERROR"

    async def test_branch_with_new_model_regenerates(self, api: ChatApiClient) -> None:
        store = ConversationStore(api)
        await store.send_message("2+2?")
        source = store.active_chat
        reply_id = store.messages()[1].id

        branch = await store.branch(reply_id, new_model_id="openai/gpt-4o-mini")

        assert branch != source
        messages = store.messages(branch)
        assert [m.role for m in messages] == ["user", "ai"]
        assert messages[1].id != reply_id
        assert messages[1].model_id == "openai/gpt-4o-mini"
        assert len(store.messages(source)) == 2


class TestGuest:
    async def test_guest_then_migrate(self, api: ChatApiClient) -> None:
        storage = MemoryStorage()
        guest = ConversationStore(api, guest=True, storage=storage, trial_limit=3)

        await guest.send_message("hello")

        assert guest.trials.remaining == 2
        assert [m.content for m in guest.messages()] == ["hello", "2 + 2 = 4"]

        signed_in = ConversationStore(api, storage=storage)
        result = await signed_in.migrate_guest_history()
        await signed_in.load_chats()

        assert result is not None
        assert [c.key for c in signed_in.chats] == result.chat_ids
        assert signed_in.trials.remaining == signed_in.trials.limit
