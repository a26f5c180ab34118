"""Client conversation state: optimistic updates reconciled with streamed replies.

Every user action (send, edit, regenerate) runs as an ``Interaction`` keyed by
the id of its placeholder AI message::

    idle -> optimistic-pending -> streaming -> confirmed | rolled-back

Snapshots, confirmations and rollbacks address a placeholder id, never "the
current stream"; updates for an id that is unknown or already finished are
ignored. Guest mode keeps the same state machine but stores chats on the
device through a ``StoragePort`` and limits the number of replies.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Literal

import httpx
import structlog
from pydantic import BaseModel

from allchat.client.api_client import ApiError, ChatApiClient
from allchat.client.storage import MemoryStorage, StoragePort
from allchat.client.stream_reader import Accumulator, StreamError, read_stream
from allchat.schemas.chat_schema import (
    BranchRequest,
    ChatSummary,
    ChatTurn,
    EditMessageRequest,
    GuestChat,
    GuestMessage,
    GuestStreamRequest,
    MessageRecord,
    MigrateGuestRequest,
    MigrateGuestResponse,
    ResubmitRequest,
    SearchResult,
    SendMessageRequest,
)
from allchat.schemas.frame_schema import ChatInfoFrame, CompleteFrame, KeyUsageFrame

logger = structlog.get_logger()

GUEST_STORAGE_KEY = "allchat-guest-history"
GUEST_TRIALS_KEY = "allchat-guest-trials"
DEFAULT_GUEST_TRIALS = 10
DEFAULT_MODEL_ID = "google/gemini-1.5-flash-latest"
TITLE_MAX_LENGTH = 30

ChatKey = int | str
MessageId = int | str


class InteractionState(str, Enum):
    IDLE = "idle"
    OPTIMISTIC_PENDING = "optimistic-pending"
    STREAMING = "streaming"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled-back"


LIVE_STATES = frozenset({InteractionState.OPTIMISTIC_PENDING, InteractionState.STREAMING})


class TrialsExhaustedError(Exception):
    """Guest has used every free reply."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"You have used all {limit} free messages. Sign in to keep chatting.")


class InteractionInProgressError(Exception):
    """A reply is still streaming in this chat."""


class UnknownMessageError(LookupError):
    """The message is not in the chat's list (or not yet confirmed)."""


class ClientMessage(BaseModel):
    """Message entry as displayed by the client."""

    id: MessageId
    role: Literal["user", "ai"]
    content: str = ""
    reasoning: str | None = None
    is_streaming: bool = False
    model_id: str | None = None
    used_web_search: bool = False
    edit_count: int = 0
    search_results: list[SearchResult] | None = None
    reply_to_id: MessageId | None = None

    @classmethod
    def from_record(cls, record: MessageRecord, fallback_id: MessageId) -> "ClientMessage":
        return cls(
            id=record.id if record.id is not None else fallback_id,
            role=record.role,
            content=record.content,
            reasoning=record.reasoning,
            model_id=record.model_id,
            used_web_search=record.used_web_search,
            edit_count=record.edit_count,
            search_results=record.search_results,
            reply_to_id=record.reply_to_id,
        )


class ChatEntry(BaseModel):
    """Chat as listed in the sidebar."""

    key: ChatKey
    title: str
    model_id: str
    source_key: ChatKey | None = None
    branch_from_message_id: MessageId | None = None
    share_id: str | None = None

    @classmethod
    def from_summary(cls, summary: ChatSummary) -> "ChatEntry":
        return cls(
            key=summary.id,
            title=summary.title,
            model_id=summary.model_id,
            source_key=summary.source_chat_id,
            branch_from_message_id=summary.branch_from_message_id,
            share_id=summary.share_id,
        )


@dataclass
class Interaction:
    placeholder_id: str
    chat_key: ChatKey
    kind: Literal["send", "edit", "regenerate"]
    user_entry_id: MessageId
    user_entry_is_new: bool
    before: list[ClientMessage]
    draft_text: str = ""
    state: InteractionState = InteractionState.OPTIMISTIC_PENDING


NotificationLevel = Literal["info", "success", "warning", "error"]


@dataclass
class Notification:
    message: str
    level: NotificationLevel = "info"
    code: str | None = None


@dataclass
class TrialCounter:
    """Guest reply allowance persisted in device storage."""

    storage: StoragePort
    limit: int = DEFAULT_GUEST_TRIALS
    key: str = GUEST_TRIALS_KEY

    @property
    def used(self) -> int:
        value = self.storage.get(self.key)
        return value if isinstance(value, int) and value > 0 else 0

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    def check(self) -> None:
        if self.remaining == 0:
            raise TrialsExhaustedError(self.limit)

    def record(self) -> None:
        self.storage.set(self.key, self.used + 1)

    def reset(self) -> None:
        self.storage.remove(self.key)


class ConversationStore:
    """Chat list, per-chat message lists and in-flight interactions."""

    def __init__(
        self,
        api: ChatApiClient | None = None,
        *,
        guest: bool = False,
        storage: StoragePort | None = None,
        trial_limit: int = DEFAULT_GUEST_TRIALS,
        default_model_id: str = DEFAULT_MODEL_ID,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._api = api
        self.guest = guest
        self._storage = storage or MemoryStorage()
        self.trials = TrialCounter(self._storage, limit=trial_limit)
        self.default_model_id = default_model_id
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)

        self.chats: list[ChatEntry] = []
        self.active_chat: ChatKey | None = None
        self.input_text = ""
        self.notifications: list[Notification] = []

        self._messages: dict[ChatKey, list[ClientMessage]] = {}
        self._snapshots: dict[str, Accumulator] = {}
        self._interactions: dict[str, Interaction] = {}
        self._key_notices: set[ChatKey] = set()
        self._subscribers: list[Callable[[], None]] = []

        if guest:
            self._load_guest_history()

    # --- Observation ---

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a change callback; returns the function that removes it."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def messages(self, chat_key: ChatKey | None = None) -> list[ClientMessage]:
        """Stored entries of a chat (placeholders show their own, empty, text)."""
        key = self.active_chat if chat_key is None else chat_key
        if key is None:
            return []
        return list(self._messages.get(key, []))

    def display_messages(self, chat_key: ChatKey | None = None) -> list[ClientMessage]:
        """Entries with live snapshots overriding the placeholders' own text."""
        shown = []
        for message in self.messages(chat_key):
            snapshot = self._snapshots.get(str(message.id))
            if snapshot is not None:
                message = message.model_copy(
                    update={"content": snapshot.content, "reasoning": snapshot.reasoning or None}
                )
            shown.append(message)
        return shown

    def snapshot(self, placeholder_id: str) -> Accumulator | None:
        return self._snapshots.get(placeholder_id)

    def interaction(self, placeholder_id: str) -> Interaction | None:
        return self._interactions.get(placeholder_id)

    def state_of(self, placeholder_id: str) -> InteractionState:
        interaction = self._interactions.get(placeholder_id)
        return interaction.state if interaction else InteractionState.IDLE

    def is_busy(self, chat_key: ChatKey | None = None) -> bool:
        key = self.active_chat if chat_key is None else chat_key
        return any(
            i.chat_key == key and i.state in LIVE_STATES for i in self._interactions.values()
        )

    def select_chat(self, chat_key: ChatKey | None) -> None:
        self.active_chat = chat_key
        self._changed()

    # --- State machine ---

    def begin_send(
        self,
        content: str,
        *,
        model_id: str | None = None,
        use_web_search: bool = False,
    ) -> Interaction:
        """Append the optimistic user message and an empty streaming placeholder."""
        if not content.strip():
            raise ValueError("message content is empty")
        if self.guest:
            self.trials.check()
        model_id = model_id or self._chat_model(self.active_chat)

        key = self.active_chat
        if key is None:
            key = self._start_local_chat(content, model_id)
        self._ensure_idle(key)

        messages = self._messages.setdefault(key, [])
        before = [m.model_copy() for m in messages]
        user = ClientMessage(
            id=f"local-{self._new_id()}",
            role="user",
            content=content,
            model_id=model_id,
            used_web_search=use_web_search,
        )
        placeholder = self._placeholder(user.id, model_id)
        messages.extend([user, placeholder])

        interaction = Interaction(
            placeholder_id=str(placeholder.id),
            chat_key=key,
            kind="send",
            user_entry_id=user.id,
            user_entry_is_new=True,
            before=before,
            draft_text=content,
        )
        self._interactions[interaction.placeholder_id] = interaction
        self.input_text = ""
        self._changed()
        return interaction

    def begin_resubmit(
        self,
        message_id: MessageId,
        new_content: str | None = None,
        *,
        model_id: str | None = None,
        chat_key: ChatKey | None = None,
    ) -> Interaction:
        """Cut the chat back to a user message (optionally edited) and add a placeholder.

        ``message_id`` may name the AI reply; its user message is used instead.
        """
        if new_content is not None and not new_content.strip():
            raise ValueError("edited content is empty")
        if self.guest:
            self.trials.check()
        key = self.active_chat if chat_key is None else chat_key
        if key is None or key not in self._messages:
            raise UnknownMessageError(message_id)
        self._ensure_idle(key)

        messages = self._messages[key]
        index = self._user_index(messages, message_id, editing=new_content is not None)
        before = [m.model_copy() for m in messages]

        user = messages[index]
        kind: Literal["edit", "regenerate"] = "regenerate"
        if new_content is not None and new_content != user.content:
            user = user.model_copy(
                update={"content": new_content, "edit_count": user.edit_count + 1}
            )
            kind = "edit"
        model_id = model_id or user.model_id or self._chat_model(key)
        placeholder = self._placeholder(user.id, model_id)
        self._messages[key] = [*messages[:index], user, placeholder]

        interaction = Interaction(
            placeholder_id=str(placeholder.id),
            chat_key=key,
            kind=kind,
            user_entry_id=user.id,
            user_entry_is_new=False,
            before=before,
        )
        self._interactions[interaction.placeholder_id] = interaction
        self._changed()
        return interaction

    def apply_chat_info(self, placeholder_id: str, frame: ChatInfoFrame) -> None:
        """Register a newly created chat and swap in the confirmed user message."""
        interaction = self._live(placeholder_id)
        if interaction is None:
            return
        if frame.chat is not None and interaction.chat_key != frame.chat.id:
            self._rekey_chat(interaction.chat_key, ChatEntry.from_summary(frame.chat))
        if frame.user_message is not None:
            confirmed = ClientMessage.from_record(frame.user_message, interaction.user_entry_id)
            self._replace(interaction.chat_key, interaction.user_entry_id, confirmed)
            self._replace_field(interaction, "reply_to_id", confirmed.id)
            interaction.user_entry_id = confirmed.id
        interaction.state = InteractionState.STREAMING
        self._changed()

    def apply_snapshot(self, placeholder_id: str, snapshot: Accumulator) -> None:
        """Record the latest accumulated text for a live placeholder."""
        interaction = self._live(placeholder_id)
        if interaction is None:
            return
        self._snapshots[placeholder_id] = snapshot
        interaction.state = InteractionState.STREAMING
        self._changed()

    def apply_key_usage(self, placeholder_id: str, frame: KeyUsageFrame) -> None:
        """Show the server-key notice once per chat."""
        interaction = self._live(placeholder_id)
        if interaction is None or frame.source != "server_default":
            return
        if interaction.chat_key in self._key_notices:
            return
        self._key_notices.add(interaction.chat_key)
        self._notify(
            "Using the shared server key. Add your own OpenRouter key in settings for full access.",
            "info",
            code="SERVER_KEY",
        )

    def confirm(self, placeholder_id: str, frame: CompleteFrame) -> None:
        """Replace the placeholder (and user entry) with the confirmed records in place."""
        interaction = self._live(placeholder_id)
        if interaction is None:
            return
        if frame.user_message is not None:
            confirmed_user = ClientMessage.from_record(
                frame.user_message, interaction.user_entry_id
            )
            self._replace(interaction.chat_key, interaction.user_entry_id, confirmed_user)
            interaction.user_entry_id = confirmed_user.id
        reply = ClientMessage.from_record(frame.message, placeholder_id)
        if reply.reply_to_id is None:
            reply.reply_to_id = interaction.user_entry_id
        self._replace(interaction.chat_key, placeholder_id, reply)

        self._snapshots.pop(placeholder_id, None)
        interaction.state = InteractionState.CONFIRMED
        if self.guest:
            self.trials.record()
            self._save_guest_history()
        logger.debug("Reply confirmed", placeholder_id=placeholder_id, chat=interaction.chat_key)
        self._changed()

    def rollback(
        self,
        placeholder_id: str,
        message: str,
        code: str | None = None,
        restore_history: bool = False,
    ) -> None:
        """Undo a failed interaction and surface the error.

        The placeholder always goes; the user entry goes when this interaction
        created it. ``restore_history`` puts back the list as it was before
        the action, for requests the server rejected before doing anything.
        """
        interaction = self._live(placeholder_id)
        if interaction is None:
            return
        key = interaction.chat_key
        messages = self._messages.get(key, [])

        if restore_history:
            messages = [m.model_copy() for m in interaction.before]
        else:
            drop = {placeholder_id}
            if interaction.user_entry_is_new:
                drop.add(str(interaction.user_entry_id))
            messages = [m for m in messages if str(m.id) not in drop]
        self._messages[key] = messages

        if interaction.kind == "send" and not self.input_text:
            self.input_text = interaction.draft_text
        if not messages and self._is_local_key(key):
            self._drop_local_chat(key)

        self._snapshots.pop(placeholder_id, None)
        interaction.state = InteractionState.ROLLED_BACK
        if self.guest:
            self._save_guest_history()
        logger.info("Interaction rolled back", placeholder_id=placeholder_id, code=code)
        self._notify(message, "error", code=code)

    # --- Actions ---

    async def send_message(
        self,
        content: str,
        *,
        model_id: str | None = None,
        use_web_search: bool = False,
        user_api_key: str | None = None,
        user_tavily_key: str | None = None,
        file_data: str | None = None,
        file_mime_type: str | None = None,
        file_name: str | None = None,
    ) -> Interaction:
        """Send a message and stream the reply into the active chat."""
        api = self._require_api()
        interaction = self.begin_send(content, model_id=model_id, use_web_search=use_web_search)
        placeholder = self._entry(interaction.chat_key, interaction.placeholder_id)
        model = placeholder.model_id if placeholder else model_id

        if self.guest:
            turns = self._turns(interaction.chat_key, upto=interaction.user_entry_id)
            request = GuestStreamRequest(messages=turns, model_id=model)
            return await self._run(interaction, lambda: api.guest_stream(request))

        chat_id = interaction.chat_key if isinstance(interaction.chat_key, int) else None
        send = SendMessageRequest(
            messages=self._turns(interaction.chat_key, upto=interaction.user_entry_id),
            chat_id=chat_id,
            model_id=model,
            use_web_search=use_web_search,
            user_api_key=user_api_key,
            user_tavily_key=user_tavily_key,
            file_data=file_data,
            file_mime_type=file_mime_type,
            file_name=file_name,
        )
        return await self._run(interaction, lambda: api.send_message(send))

    async def edit_message(
        self,
        message_id: MessageId,
        new_content: str,
        *,
        model_id: str | None = None,
        use_web_search: bool = False,
        user_api_key: str | None = None,
        user_tavily_key: str | None = None,
    ) -> Interaction:
        """Edit a user message and stream a fresh reply."""
        if not new_content.strip():
            raise ValueError("message content is empty")
        return await self._resubmit(
            message_id,
            new_content,
            model_id=model_id,
            use_web_search=use_web_search,
            user_api_key=user_api_key,
            user_tavily_key=user_tavily_key,
        )

    async def regenerate(
        self,
        message_id: MessageId,
        *,
        model_id: str | None = None,
        use_web_search: bool = False,
        user_api_key: str | None = None,
        user_tavily_key: str | None = None,
    ) -> Interaction:
        """Regenerate the reply to a user message (or replace an AI reply)."""
        return await self._resubmit(
            message_id,
            None,
            model_id=model_id,
            use_web_search=use_web_search,
            user_api_key=user_api_key,
            user_tavily_key=user_tavily_key,
        )

    async def branch(
        self, ai_message_id: MessageId, *, new_model_id: str | None = None
    ) -> ChatKey | None:
        """Start a new chat from the active chat up to ``ai_message_id``.

        With ``new_model_id`` the copied reply is regenerated under that model.
        Returns the new chat's key, or ``None`` when the server refused.
        """
        source_key = self.active_chat
        if source_key is None or self._entry(source_key, ai_message_id) is None:
            raise UnknownMessageError(ai_message_id)
        source = self._chat(source_key)
        model_id = new_model_id or (source.model_id if source else self.default_model_id)

        if self.guest:
            prefix = self._prefix(source_key, ai_message_id)
            key = f"guest-{self._new_id()}"
            id_map: dict[MessageId, MessageId] = {}
            copies = []
            for message in prefix:
                copy = message.model_copy(update={"id": f"guest-{self._new_id()}"})
                id_map[message.id] = copy.id
                if copy.reply_to_id is not None:
                    copy.reply_to_id = id_map.get(copy.reply_to_id)
                copies.append(copy)
            entry = ChatEntry(
                key=key,
                title=source.title if source else "New Chat",
                model_id=model_id,
                source_key=source_key,
                branch_from_message_id=ai_message_id,
            )
            self.chats.insert(0, entry)
            self._messages[key] = copies
            new_reply_id = id_map[ai_message_id]
            self._save_guest_history()
        else:
            if not isinstance(source_key, int) or not isinstance(ai_message_id, int):
                raise UnknownMessageError(ai_message_id)
            api = self._require_api()
            try:
                summary = await api.branch(
                    BranchRequest(
                        source_chat_id=source_key,
                        from_ai_message_id=ai_message_id,
                        new_model_id=new_model_id,
                    )
                )
                detail = await api.get_chat(summary.id)
            except ApiError as exc:
                self._notify(exc.message, "error", code=exc.code)
                return None
            key = summary.id
            self.chats.insert(0, ChatEntry.from_summary(summary))
            self._messages[key] = [
                ClientMessage.from_record(record, f"copy-{index}")
                for index, record in enumerate(detail.messages)
            ]
            new_reply_id = self._messages[key][-1].id if self._messages[key] else ai_message_id

        self.active_chat = key
        self._notify("Branch created.", "success")
        if new_model_id:
            await self.regenerate(new_reply_id, model_id=new_model_id)
        return key

    async def delete_message(self, message_id: MessageId) -> None:
        """Delete a message and the AI reply that answers it."""
        key = self.active_chat
        if key is None or self._entry(key, message_id) is None:
            raise UnknownMessageError(message_id)
        self._ensure_idle(key)

        if self.guest:
            deleted = self._local_reply_chain(key, message_id)
            self._messages[key] = [m for m in self._messages[key] if m.id not in deleted]
            chat_deleted = not self._messages[key]
            if chat_deleted:
                self._drop_local_chat(key)
            self._save_guest_history()
        else:
            if not isinstance(message_id, int):
                raise UnknownMessageError(message_id)
            try:
                result = await self._require_api().delete_message(message_id)
            except ApiError as exc:
                self._notify(exc.message, "error", code=exc.code)
                return
            deleted = set(result.deleted_ids)
            self._messages[key] = [m for m in self._messages.get(key, []) if m.id not in deleted]
            chat_deleted = result.chat_deleted
            if chat_deleted:
                self._forget_chat(result.deleted_chat_id if result.deleted_chat_id is not None else key)

        self._notify("Message deleted.", "info")
        if chat_deleted:
            self._notify("Chat deleted.", "info")

    async def delete_chat(self, chat_key: ChatKey) -> None:
        """Delete a chat; its branches stay as top-level chats."""
        self._ensure_idle(chat_key)
        if self.guest:
            promoted = [c.key for c in self.chats if c.source_key == chat_key]
            self._drop_local_chat(chat_key)
            self._save_guest_history()
        else:
            if not isinstance(chat_key, int):
                raise UnknownMessageError(chat_key)
            try:
                result = await self._require_api().delete_chat(chat_key)
            except ApiError as exc:
                self._notify(exc.message, "error", code=exc.code)
                return
            promoted = result.promoted_chat_ids
            self._forget_chat(chat_key)
        for chat in self.chats:
            if chat.key in promoted:
                chat.source_key = None
                chat.branch_from_message_id = None
        self._notify("Chat deleted.", "info")

    async def load_chats(self) -> None:
        """Fetch the signed-in user's chat list."""
        if self.guest:
            return
        entries = await self._require_api().list_chats()
        self.chats = [ChatEntry.from_summary(entry) for entry in entries]
        self._changed()

    async def open_chat(self, chat_id: int) -> None:
        """Fetch a chat's messages and make it active."""
        detail = await self._require_api().get_chat(chat_id)
        if not self.is_busy(chat_id):
            self._messages[chat_id] = [
                ClientMessage.from_record(record, f"copy-{index}")
                for index, record in enumerate(detail.messages)
            ]
        self.active_chat = chat_id
        self._changed()

    async def migrate_guest_history(self) -> MigrateGuestResponse | None:
        """Upload device-stored guest chats to the signed-in account and clear them."""
        raw = self._storage.get(GUEST_STORAGE_KEY)
        if not raw:
            return None
        request = MigrateGuestRequest(guest_chats=[GuestChat.model_validate(item) for item in raw])
        try:
            result = await self._require_api().migrate_guest(request)
        except ApiError as exc:
            self._notify(exc.message, "error", code=exc.code)
            return None
        self._storage.remove(GUEST_STORAGE_KEY)
        self.trials.reset()
        self._notify(f"Successfully migrated {result.migrated_count} chats!", "success")
        return result

    # --- Internals ---

    async def _resubmit(
        self,
        message_id: MessageId,
        new_content: str | None,
        *,
        model_id: str | None,
        use_web_search: bool,
        user_api_key: str | None,
        user_tavily_key: str | None,
    ) -> Interaction:
        api = self._require_api()
        interaction = self.begin_resubmit(message_id, new_content, model_id=model_id)
        placeholder = self._entry(interaction.chat_key, interaction.placeholder_id)
        model = placeholder.model_id if placeholder else model_id

        if self.guest:
            turns = self._turns(interaction.chat_key, upto=interaction.user_entry_id)
            guest_request = GuestStreamRequest(messages=turns, model_id=model)
            return await self._run(interaction, lambda: api.guest_stream(guest_request))

        if not isinstance(interaction.chat_key, int) or not isinstance(
            interaction.user_entry_id, int
        ):
            self.rollback(
                interaction.placeholder_id,
                "This message has not been saved yet.",
                restore_history=True,
            )
            return interaction

        fields = {
            "message_id": interaction.user_entry_id,
            "chat_id": interaction.chat_key,
            "model_id": model,
            "use_web_search": use_web_search,
            "user_api_key": user_api_key,
            "user_tavily_key": user_tavily_key,
        }
        if interaction.kind == "edit":
            edit = EditMessageRequest(new_content=new_content, **fields)
            return await self._run(interaction, lambda: api.edit_message(edit))
        regenerate = ResubmitRequest(**fields)
        return await self._run(interaction, lambda: api.regenerate(regenerate))

    async def _run(
        self,
        interaction: Interaction,
        open_stream: Callable[[], Awaitable[httpx.Response]],
    ) -> Interaction:
        placeholder_id = interaction.placeholder_id
        try:
            await self._stream_reply(placeholder_id, open_stream)
        except asyncio.CancelledError:
            self.rollback(placeholder_id, "The reply was cancelled.", "CANCELLED")
            raise
        except Exception:
            logger.exception("Reply failed", placeholder_id=placeholder_id)
            self.rollback(
                placeholder_id,
                "Something went wrong while receiving the reply.",
                "INTERNAL_ERROR",
            )
            raise
        return interaction

    async def _stream_reply(
        self,
        placeholder_id: str,
        open_stream: Callable[[], Awaitable[httpx.Response]],
    ) -> None:
        try:
            response = await open_stream()
        except ApiError as exc:
            self.rollback(placeholder_id, exc.message, exc.code, restore_history=True)
            return
        except httpx.HTTPError as exc:
            logger.warning("Could not reach the server", error=str(exc))
            self.rollback(
                placeholder_id,
                "Could not reach the server. Please try again.",
                "NETWORK_ERROR",
                restore_history=True,
            )
            return

        try:
            await read_stream(response, placeholder_id, self)
        except StreamError as exc:
            self.rollback(placeholder_id, exc.message, exc.code)

    def _require_api(self) -> ChatApiClient:
        if self._api is None:
            raise RuntimeError("no API client configured")
        return self._api

    def _live(self, placeholder_id: str) -> Interaction | None:
        interaction = self._interactions.get(placeholder_id)
        if interaction is None or interaction.state not in LIVE_STATES:
            return None
        return interaction

    def _ensure_idle(self, chat_key: ChatKey) -> None:
        if self.is_busy(chat_key):
            raise InteractionInProgressError("A reply is still being generated in this chat")

    def _placeholder(self, reply_to: MessageId, model_id: str) -> ClientMessage:
        return ClientMessage(
            id=f"pending-{self._new_id()}",
            role="ai",
            is_streaming=True,
            model_id=model_id,
            reply_to_id=reply_to,
        )

    def _start_local_chat(self, content: str, model_id: str) -> ChatKey:
        if self.guest:
            key: ChatKey = f"guest-{self._new_id()}"
            title = content.strip()[:TITLE_MAX_LENGTH] or "New Chat"
            self.chats.insert(0, ChatEntry(key=key, title=title, model_id=model_id))
        else:
            key = f"draft-{self._new_id()}"
        self._messages[key] = []
        self.active_chat = key
        return key

    def _is_local_key(self, key: ChatKey) -> bool:
        return isinstance(key, str)

    def _rekey_chat(self, old_key: ChatKey, entry: ChatEntry) -> None:
        self._messages[entry.key] = self._messages.pop(old_key, [])
        for interaction in self._interactions.values():
            if interaction.chat_key == old_key:
                interaction.chat_key = entry.key
        self.chats = [c for c in self.chats if c.key != old_key]
        self.chats.insert(0, entry)
        if self.active_chat == old_key:
            self.active_chat = entry.key

    def _drop_local_chat(self, key: ChatKey) -> None:
        self._forget_chat(key)

    def _forget_chat(self, key: ChatKey) -> None:
        self._messages.pop(key, None)
        self.chats = [c for c in self.chats if c.key != key]
        if self.active_chat == key:
            self.active_chat = None

    def _chat(self, key: ChatKey | None) -> ChatEntry | None:
        return next((c for c in self.chats if c.key == key), None)

    def _chat_model(self, key: ChatKey | None) -> str:
        chat = self._chat(key)
        return chat.model_id if chat else self.default_model_id

    def _entry(self, key: ChatKey, message_id: MessageId) -> ClientMessage | None:
        return next(
            (m for m in self._messages.get(key, []) if str(m.id) == str(message_id)), None
        )

    def _replace(self, key: ChatKey, message_id: MessageId, new: ClientMessage) -> None:
        messages = self._messages.get(key, [])
        for index, message in enumerate(messages):
            if str(message.id) == str(message_id):
                messages[index] = new
                return

    def _replace_field(self, interaction: Interaction, name: str, value: object) -> None:
        placeholder = self._entry(interaction.chat_key, interaction.placeholder_id)
        if placeholder is not None:
            setattr(placeholder, name, value)

    def _user_index(
        self, messages: list[ClientMessage], message_id: MessageId, editing: bool
    ) -> int:
        index = next(
            (i for i, m in enumerate(messages) if str(m.id) == str(message_id)), None
        )
        if index is None:
            raise UnknownMessageError(message_id)
        if messages[index].role == "user":
            return index
        if editing:
            raise ValueError("only user messages can be edited")
        reply_to = messages[index].reply_to_id
        for i in range(index - 1, -1, -1):
            if reply_to is not None and str(messages[i].id) == str(reply_to):
                return i
        for i in range(index - 1, -1, -1):
            if messages[i].role == "user":
                return i
        raise UnknownMessageError(message_id)

    def _prefix(self, key: ChatKey, message_id: MessageId) -> list[ClientMessage]:
        prefix = []
        for message in self._messages.get(key, []):
            prefix.append(message)
            if str(message.id) == str(message_id):
                break
        return prefix

    def _turns(self, key: ChatKey, upto: MessageId) -> list[ChatTurn]:
        return [
            ChatTurn(role=m.role, content=m.content)
            for m in self._prefix(key, upto)
            if not m.is_streaming
        ]

    def _local_reply_chain(self, key: ChatKey, message_id: MessageId) -> set[MessageId]:
        messages = self._messages.get(key, [])
        target = self._entry(key, message_id)
        deleted: set[MessageId] = {message_id}
        if target is None or target.role != "user":
            return deleted
        replies = [m.id for m in messages if m.role == "ai" and m.reply_to_id == target.id]
        if not replies:
            index = messages.index(target)
            following = messages[index + 1] if index + 1 < len(messages) else None
            if following is not None and following.role == "ai":
                replies = [following.id]
        deleted.update(replies)
        return deleted

    def _notify(self, message: str, level: NotificationLevel, code: str | None = None) -> None:
        self.notifications.append(Notification(message, level, code))
        self._changed()

    def _changed(self) -> None:
        for callback in list(self._subscribers):
            callback()

    # --- Guest persistence ---

    def _load_guest_history(self) -> None:
        raw = self._storage.get(GUEST_STORAGE_KEY) or []
        for item in raw:
            chat = GuestChat.model_validate(item)
            key = item.get("id") or f"guest-{self._new_id()}"
            self.chats.append(
                ChatEntry(
                    key=key,
                    title=chat.title,
                    model_id=chat.model_id or self.default_model_id,
                    source_key=item.get("sourceId"),
                )
            )
            entries: list[ClientMessage] = []
            last_user: MessageId | None = None
            for message in chat.messages:
                entry = ClientMessage(
                    id=f"guest-{self._new_id()}",
                    role=message.role,
                    content=message.content,
                    reasoning=message.reasoning,
                    model_id=message.model_id,
                    used_web_search=message.used_web_search,
                    search_results=message.search_results,
                    reply_to_id=last_user if message.role == "ai" else None,
                )
                if entry.role == "user":
                    last_user = entry.id
                entries.append(entry)
            self._messages[key] = entries

    def _save_guest_history(self) -> None:
        payload = []
        for chat in self.chats:
            messages = [
                GuestMessage(
                    role=m.role,
                    content=m.content,
                    reasoning=m.reasoning,
                    model_id=m.model_id,
                    used_web_search=m.used_web_search,
                    search_results=m.search_results,
                )
                for m in self._messages.get(chat.key, [])
                if not m.is_streaming
            ]
            if not messages:
                continue
            guest_chat = GuestChat(title=chat.title, model_id=chat.model_id, messages=messages)
            payload.append(
                {
                    "id": chat.key,
                    "sourceId": chat.source_key,
                    **guest_chat.model_dump(mode="json", by_alias=True),
                }
            )
        self._storage.set(GUEST_STORAGE_KEY, payload)
