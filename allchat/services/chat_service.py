"""Service layer for chat and message management outside the streaming flow."""

import json
import uuid

import structlog

from allchat.core.exceptions import (
    AuthorizationError,
    ChatNotFoundError,
    MessageNotFoundError,
    SharedChatNotFoundError,
)
from allchat.models.chat import Chat
from allchat.models.message import Message
from allchat.repositories.chat_repo import ChatRepository
from allchat.schemas.chat_schema import (
    ChatDetail,
    ChatSummary,
    ChatTreeEntry,
    DeleteChatResponse,
    DeleteMessageResponse,
    MessageRecord,
    MigrateGuestRequest,
    MigrateGuestResponse,
    ShareResponse,
    UpdateChatRequest,
)
from allchat.services.chat_tree import flatten_chat_forest

logger = structlog.get_logger()


async def get_owned_chat(chat_repo: ChatRepository, chat_id: int, user_id: str) -> Chat:
    """Load a chat, enforcing that ``user_id`` owns it."""
    chat = await chat_repo.find_chat_by_id(chat_id)
    if chat is None:
        raise ChatNotFoundError()
    if chat.user_id != user_id:
        raise AuthorizationError(message="Not authorized to access this chat")
    return chat


async def get_owned_message(
    chat_repo: ChatRepository, message_id: int, user_id: str
) -> tuple[Chat, Message]:
    """Load a message and its chat, enforcing chat ownership."""
    message = await chat_repo.find_message_by_id(message_id)
    if message is None:
        raise MessageNotFoundError()
    chat = await get_owned_chat(chat_repo, message.chat_id, user_id)
    return chat, message


class ChatService:
    """Chat listing, mutation, deletion, sharing and guest import."""

    def __init__(
        self,
        chat_repo: ChatRepository,
        user_id: str | None,
        default_model_id: str = "google/gemini-1.5-flash-latest",
    ) -> None:
        self._chat_repo = chat_repo
        self._user_id = user_id
        self._default_model_id = default_model_id

    @property
    def user_id(self) -> str:
        if self._user_id is None:
            raise AuthorizationError(message="Sign in to manage chats")
        return self._user_id

    async def list_chats(self) -> list[ChatTreeEntry]:
        """Return the caller's chats as a depth-annotated branch forest."""
        chats = await self._chat_repo.find_chats_by_user(self.user_id)
        return [
            ChatTreeEntry(**ChatSummary.model_validate(chat).model_dump(), depth=depth)
            for chat, depth in flatten_chat_forest(chats)
        ]

    async def get_chat(self, chat_id: int) -> ChatDetail:
        """Return a chat owned by the caller with its ordered messages."""
        chat = await get_owned_chat(self._chat_repo, chat_id, self.user_id)
        return await self._detail(chat)

    async def update_chat(self, chat_id: int, request: UpdateChatRequest) -> ChatSummary:
        """Rename a chat and/or change its model."""
        chat = await get_owned_chat(self._chat_repo, chat_id, self.user_id)
        values = request.model_dump(include={"title", "model_id"}, exclude_none=True)
        if values:
            await self._chat_repo.update_chat(chat.id, **values)
            await self._chat_repo.refresh(chat)
        return ChatSummary.model_validate(chat)

    async def delete_chat(self, chat_id: int) -> DeleteChatResponse:
        """Delete a chat; its branch children become top-level chats."""
        chat = await get_owned_chat(self._chat_repo, chat_id, self.user_id)
        promoted = await self._chat_repo.delete_chat(chat.id)
        logger.info("Chat deleted", chat_id=chat_id, promoted_chat_ids=promoted)
        return DeleteChatResponse(deleted_chat_id=chat_id, promoted_chat_ids=promoted)

    async def delete_message(self, message_id: int) -> DeleteMessageResponse:
        """Delete a message and the AI reply answering it.

        The chat itself is deleted when no messages remain.
        """
        chat, message = await get_owned_message(self._chat_repo, message_id, self.user_id)

        ids_to_delete = [message.id]
        if message.role == "user":
            replies = await self._chat_repo.find_replies(message)
            ids_to_delete.extend(reply.id for reply in replies)

        await self._chat_repo.delete_messages_by_ids(ids_to_delete)

        remaining = await self._chat_repo.count_messages(chat.id)
        if remaining == 0:
            await self._chat_repo.delete_chat(chat.id)
            logger.info("Empty chat deleted", chat_id=chat.id)
            return DeleteMessageResponse(
                deleted_ids=ids_to_delete,
                chat_deleted=True,
                deleted_chat_id=chat.id,
            )
        return DeleteMessageResponse(deleted_ids=ids_to_delete)

    async def share_chat(self, chat_id: int) -> ShareResponse:
        """Publish a chat under a share id (reuses an existing one)."""
        chat = await get_owned_chat(self._chat_repo, chat_id, self.user_id)
        if chat.share_id is None:
            await self._chat_repo.update_chat(chat.id, share_id=str(uuid.uuid4()))
            await self._chat_repo.refresh(chat)
        return ShareResponse(share_id=chat.share_id or "")

    async def unshare_chat(self, chat_id: int) -> None:
        """Revoke a chat's share id."""
        chat = await get_owned_chat(self._chat_repo, chat_id, self.user_id)
        await self._chat_repo.update_chat(chat.id, share_id=None)

    async def get_shared_chat(self, share_id: str) -> ChatDetail:
        """Public read-only view of a shared chat."""
        chat = await self._chat_repo.find_chat_by_share_id(share_id)
        if chat is None:
            raise SharedChatNotFoundError()
        return await self._detail(chat)

    async def migrate_guest(self, request: MigrateGuestRequest) -> MigrateGuestResponse:
        """Import device-local guest chats into the caller's account."""
        chat_ids: list[int] = []
        for guest_chat in request.guest_chats:
            if not guest_chat.messages:
                continue
            chat = await self._chat_repo.create_chat(
                user_id=self.user_id,
                title=guest_chat.title,
                model_id=guest_chat.model_id or self._default_model_id,
            )
            last_user_id: int | None = None
            for guest_message in guest_chat.messages:
                search_results = (
                    json.dumps([r.model_dump() for r in guest_message.search_results])
                    if guest_message.search_results
                    else None
                )
                record = await self._chat_repo.create_message(
                    chat.id,
                    guest_message.role,
                    guest_message.content,
                    reasoning=guest_message.reasoning,
                    model_id=guest_message.model_id,
                    used_web_search=guest_message.used_web_search,
                    search_results=search_results,
                    reply_to_id=last_user_id if guest_message.role == "ai" else None,
                )
                if record.role == "user":
                    last_user_id = record.id
            chat_ids.append(chat.id)
        logger.info("Guest history migrated", chats=len(chat_ids))
        return MigrateGuestResponse(migrated_count=len(chat_ids), chat_ids=chat_ids)

    async def _detail(self, chat: Chat) -> ChatDetail:
        messages = await self._chat_repo.find_messages_by_chat_id(chat.id)
        return ChatDetail(
            chat=ChatSummary.model_validate(chat),
            messages=[MessageRecord.model_validate(msg) for msg in messages],
        )
