"""Chat repository for chat and message database operations."""

from typing import Any

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from allchat.models.chat import Chat
from allchat.models.message import Message


class ChatRepository:
    """Encapsulates chat and message database queries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        """Commit the current unit of work."""
        await self._session.commit()

    async def rollback(self) -> None:
        """Discard the current unit of work."""
        await self._session.rollback()

    # --- Chats ---

    async def find_chat_by_id(self, chat_id: int) -> Chat | None:
        """Find a chat by primary key."""
        result = await self._session.execute(select(Chat).where(Chat.id == chat_id))
        return result.scalar_one_or_none()

    async def find_chat_by_share_id(self, share_id: str) -> Chat | None:
        """Find a shared chat by its public share id."""
        result = await self._session.execute(
            select(Chat).where(Chat.share_id == share_id)
        )
        return result.scalar_one_or_none()

    async def find_chats_by_user(self, user_id: str) -> list[Chat]:
        """Retrieve all chats of a user, newest first."""
        result = await self._session.execute(
            select(Chat)
            .where(Chat.user_id == user_id)
            .order_by(Chat.created_at.desc(), Chat.id.desc())
        )
        return list(result.scalars().all())

    async def create_chat(
        self,
        user_id: str,
        title: str,
        model_id: str,
        source_chat_id: int | None = None,
        branch_from_message_id: int | None = None,
    ) -> Chat:
        """Create a new chat."""
        chat = Chat(
            user_id=user_id,
            title=title,
            model_id=model_id,
            source_chat_id=source_chat_id,
            branch_from_message_id=branch_from_message_id,
        )
        self._session.add(chat)
        await self._session.flush()
        await self._session.refresh(chat)
        return chat

    async def update_chat(self, chat_id: int, **values: Any) -> None:
        """Update columns of an existing chat."""
        await self._session.execute(
            update(Chat).where(Chat.id == chat_id).values(**values)
        )

    async def delete_chat(self, chat_id: int) -> list[int]:
        """Delete a chat and its messages, promoting its branch children.

        Returns the ids of the promoted child chats.
        """
        children = await self._session.execute(
            select(Chat.id).where(Chat.source_chat_id == chat_id)
        )
        child_ids = list(children.scalars().all())
        if child_ids:
            await self._session.execute(
                update(Chat)
                .where(Chat.id.in_(child_ids))
                .values(source_chat_id=None, branch_from_message_id=None)
            )
        await self._session.execute(delete(Message).where(Message.chat_id == chat_id))
        await self._session.execute(delete(Chat).where(Chat.id == chat_id))
        return child_ids

    # --- Messages ---

    async def find_message_by_id(self, message_id: int) -> Message | None:
        """Find a message by primary key."""
        result = await self._session.execute(
            select(Message).where(Message.id == message_id)
        )
        return result.scalar_one_or_none()

    async def find_messages_by_chat_id(self, chat_id: int) -> list[Message]:
        """Retrieve all messages of a chat in chronological order."""
        result = await self._session.execute(
            select(Message).where(Message.chat_id == chat_id).order_by(Message.id.asc())
        )
        return list(result.scalars().all())

    async def find_messages_up_to(self, chat_id: int, message_id: int) -> list[Message]:
        """Retrieve the prefix of a chat ending with (and including) ``message_id``."""
        result = await self._session.execute(
            select(Message)
            .where(and_(Message.chat_id == chat_id, Message.id <= message_id))
            .order_by(Message.id.asc())
        )
        return list(result.scalars().all())

    async def find_previous_user_message(
        self, chat_id: int, before_id: int
    ) -> Message | None:
        """Find the latest user message preceding ``before_id``."""
        result = await self._session.execute(
            select(Message)
            .where(
                and_(
                    Message.chat_id == chat_id,
                    Message.id < before_id,
                    Message.role == "user",
                )
            )
            .order_by(Message.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_replies(self, message: Message) -> list[Message]:
        """Find the AI replies answering a user message.

        Rows without a reply link fall back to the next AI message by id.
        """
        result = await self._session.execute(
            select(Message)
            .where(
                and_(Message.chat_id == message.chat_id, Message.reply_to_id == message.id)
            )
            .order_by(Message.id.asc())
        )
        replies = list(result.scalars().all())
        if replies:
            return replies
        result = await self._session.execute(
            select(Message)
            .where(
                and_(
                    Message.chat_id == message.chat_id,
                    Message.id > message.id,
                    Message.role == "ai",
                    Message.reply_to_id.is_(None),
                )
            )
            .order_by(Message.id.asc())
            .limit(1)
        )
        return list(result.scalars().all())

    async def create_message(
        self, chat_id: int, role: str, content: str, **fields: Any
    ) -> Message:
        """Create a single message."""
        message = Message(chat_id=chat_id, role=role, content=content, **fields)
        self._session.add(message)
        await self._session.flush()
        await self._session.refresh(message)
        return message

    async def update_message(self, message_id: int, **values: Any) -> None:
        """Update columns of an existing message."""
        await self._session.execute(
            update(Message).where(Message.id == message_id).values(**values)
        )

    async def refresh(self, instance: Any) -> None:
        """Reload an instance from the database."""
        await self._session.refresh(instance)

    async def delete_messages_after(self, chat_id: int, message_id: int) -> None:
        """Hard-delete all messages in a chat with id > message_id."""
        await self._session.execute(
            delete(Message).where(
                and_(Message.chat_id == chat_id, Message.id > message_id)
            )
        )

    async def delete_messages_by_ids(self, message_ids: list[int]) -> None:
        """Hard-delete the given messages."""
        await self._session.execute(delete(Message).where(Message.id.in_(message_ids)))

    async def count_messages(self, chat_id: int) -> int:
        """Count the messages of a chat."""
        result = await self._session.execute(
            select(func.count()).select_from(Message).where(Message.chat_id == chat_id)
        )
        return int(result.scalar_one())
