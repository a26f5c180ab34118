"""Conversation session manager: persistence around streamed generations."""

import json
from collections.abc import AsyncGenerator

import structlog

from allchat.core.exceptions import (
    AppException,
    AuthorizationError,
    InvalidMessageRoleError,
    MessageNotFoundError,
    UpstreamCredentialError,
    UpstreamError,
)
from allchat.core.settings import ChatConfig
from allchat.models.chat import Chat
from allchat.models.message import Message
from allchat.repositories.chat_repo import ChatRepository
from allchat.schemas.chat_schema import (
    BranchRequest,
    ChatSummary,
    GuestStreamRequest,
    MessageRecord,
    ResubmitRequest,
    SendMessageRequest,
)
from allchat.schemas.frame_schema import (
    ChatInfoFrame,
    CompleteFrame,
    ContentWordFrame,
    ErrorFrame,
    GoogleThoughtWordFrame,
    KeyUsageFrame,
    ReasoningWordFrame,
    StreamFrame,
)
from allchat.services.chat_service import get_owned_chat
from allchat.services.generation_service import (
    Delta,
    GenerationRequest,
    GenerationService,
    GenerationStream,
    ImageAttachment,
    PreparedGeneration,
)

logger = structlog.get_logger()

FrameStream = AsyncGenerator[StreamFrame, None]

INTERNAL_ERROR_MESSAGE = "Something went wrong while generating the response."


def delta_to_frame(delta: Delta) -> StreamFrame:
    """Map a normalized delta onto its wire frame."""
    match delta.kind:
        case "content":
            return ContentWordFrame(word=delta.text)
        case "reasoning":
            return ReasoningWordFrame(word=delta.text)
        case "google_thought":
            return GoogleThoughtWordFrame(word=delta.text)


class SessionService:
    """Orchestrates send, edit, regenerate, branch and guest generations.

    Every ``start_*`` coroutine performs its ownership checks and pre-stream
    writes eagerly, so failures there surface as plain HTTP errors. It then
    returns a frame generator that streams the reply and, only on success,
    persists the AI message.
    """

    def __init__(
        self,
        chat_repo: ChatRepository | None,
        generation: GenerationService,
        user_id: str | None,
        chat_config: ChatConfig,
    ) -> None:
        self._chat_repo = chat_repo
        self._generation = generation
        self._user_id = user_id
        self._chat_config = chat_config

    @property
    def repo(self) -> ChatRepository:
        if self._chat_repo is None or self._user_id is None:
            raise AuthorizationError(message="Sign in to save chats")
        return self._chat_repo

    @property
    def user_id(self) -> str:
        if self._user_id is None:
            raise AuthorizationError(message="Sign in to save chats")
        return self._user_id

    async def start_send(self, request: SendMessageRequest) -> FrameStream:
        """Persist the user message (creating the chat if needed) and stream a reply."""
        model_id = request.model_id or self._generation.default_model_id
        user_turn = request.messages[-1]

        created: Chat | None = None
        if request.chat_id is None:
            created = await self.repo.create_chat(
                user_id=self.user_id,
                title=self._make_title(user_turn.content),
                model_id=model_id,
            )
            chat = created
            history = [(turn.role, turn.content) for turn in request.messages[:-1]]
        else:
            chat = await get_owned_chat(self.repo, request.chat_id, self.user_id)
            history = await self._load_history(chat.id)
            if chat.model_id != model_id:
                await self.repo.update_chat(chat.id, model_id=model_id)

        image = None
        file_metadata = None
        if request.file_data and request.file_mime_type:
            file_metadata = json.dumps(
                {"name": request.file_name, "mime_type": request.file_mime_type}
            )
            if request.file_mime_type.startswith("image/"):
                image = ImageAttachment(data=request.file_data, mime_type=request.file_mime_type)

        user_message = await self.repo.create_message(
            chat.id,
            "user",
            user_turn.content,
            used_web_search=request.use_web_search,
            file_metadata=file_metadata,
            model_id=model_id,
        )
        await self.repo.commit()

        logger.info(
            "Send accepted",
            chat_id=chat.id,
            new_chat=created is not None,
            model_id=model_id,
            use_web_search=request.use_web_search,
        )
        user_record = MessageRecord.model_validate(user_message)
        chat_info = ChatInfoFrame(
            chat=ChatSummary.model_validate(created) if created is not None else None,
            user_message=user_record,
        )
        generation = GenerationRequest(
            model_id=model_id,
            history=history,
            prompt=user_turn.content,
            use_web_search=request.use_web_search,
            tavily_key=request.user_tavily_key,
            image=image,
        )
        return self._stream(
            generation,
            user_api_key=request.user_api_key,
            chat_id=chat.id,
            user_record=user_record,
            lead=[chat_info],
        )

    async def start_resubmit(
        self, request: ResubmitRequest, new_content: str | None = None
    ) -> FrameStream:
        """Edit (when ``new_content`` is given) or regenerate from a user message.

        Everything after the user message is discarded. ``message_id`` may also
        name the AI reply to regenerate; its user message is resolved first.
        """
        chat = await get_owned_chat(self.repo, request.chat_id, self.user_id)
        message = await self.repo.find_message_by_id(request.message_id)
        if message is None:
            raise MessageNotFoundError()
        if message.chat_id != chat.id:
            raise AuthorizationError(message="Message does not belong to this chat")

        if message.role == "ai":
            if new_content is not None:
                raise InvalidMessageRoleError(expected="user", actual="ai")
            message = await self._prompting_user_message(message)

        model_id = request.model_id or chat.model_id
        if model_id != chat.model_id:
            await self.repo.update_chat(chat.id, model_id=model_id)

        await self.repo.delete_messages_after(chat.id, message.id)

        values: dict[str, object] = {
            "used_web_search": request.use_web_search,
            "model_id": model_id,
        }
        is_edit = new_content is not None and new_content != message.content
        if is_edit:
            values["content"] = new_content
            values["edit_count"] = message.edit_count + 1
        await self.repo.update_message(message.id, **values)
        await self.repo.refresh(message)

        prefix = await self.repo.find_messages_up_to(chat.id, message.id)
        history = [(m.role, m.content) for m in prefix if m.id != message.id]
        await self.repo.commit()

        logger.info(
            "Resubmit accepted",
            chat_id=chat.id,
            message_id=message.id,
            edited=is_edit,
            model_id=model_id,
        )
        user_record = MessageRecord.model_validate(message)
        generation = GenerationRequest(
            model_id=model_id,
            history=history,
            prompt=message.content,
            use_web_search=request.use_web_search,
            tavily_key=request.user_tavily_key,
        )
        return self._stream(
            generation,
            user_api_key=request.user_api_key,
            chat_id=chat.id,
            user_record=user_record,
            lead=[ChatInfoFrame(user_message=user_record)],
        )

    async def start_guest(self, request: GuestStreamRequest) -> FrameStream:
        """Stream a reply without authentication or persistence."""
        model_id = request.model_id or self._generation.default_model_id
        generation = GenerationRequest(
            model_id=model_id,
            history=[(turn.role, turn.content) for turn in request.messages[:-1]],
            prompt=request.messages[-1].content,
        )
        return self._stream(generation, user_api_key=None, chat_id=None, user_record=None)

    async def branch(self, request: BranchRequest) -> ChatSummary:
        """Copy a chat prefix, up to and including the cutoff, into a new chat."""
        source = await get_owned_chat(self.repo, request.source_chat_id, self.user_id)
        cutoff = await self.repo.find_message_by_id(request.from_ai_message_id)
        if cutoff is None or cutoff.chat_id != source.id:
            raise MessageNotFoundError()

        prefix = await self.repo.find_messages_up_to(source.id, cutoff.id)
        branch = await self.repo.create_chat(
            user_id=self.user_id,
            title=source.title,
            model_id=request.new_model_id or source.model_id,
            source_chat_id=source.id,
            branch_from_message_id=cutoff.id,
        )

        copied_ids: dict[int, int] = {}
        for original in prefix:
            copy = await self.repo.create_message(
                branch.id,
                original.role,
                original.content,
                reasoning=original.reasoning,
                image_url=original.image_url,
                file_metadata=original.file_metadata,
                used_web_search=original.used_web_search,
                edit_count=original.edit_count,
                model_id=original.model_id,
                search_results=original.search_results,
                reply_to_id=copied_ids.get(original.reply_to_id)
                if original.reply_to_id is not None
                else None,
            )
            copied_ids[original.id] = copy.id

        logger.info(
            "Chat branched",
            source_chat_id=source.id,
            chat_id=branch.id,
            copied=len(prefix),
        )
        return ChatSummary.model_validate(branch)

    async def _stream(
        self,
        request: GenerationRequest,
        user_api_key: str | None,
        chat_id: int | None,
        user_record: MessageRecord | None,
        lead: list[StreamFrame] | None = None,
    ) -> FrameStream:
        for frame in lead or []:
            yield frame

        stream: GenerationStream | None = None
        completed = False
        try:
            prepared = await self._generation.prepare(request)
            stream = await self._open_with_fallback(prepared, user_api_key, chat_id)
            yield KeyUsageFrame(source=stream.credential.source, chat_id=chat_id)

            async for delta in stream:
                yield delta_to_frame(delta)

            result = stream.result
            if not result.content and not result.reasoning:
                raise UpstreamError("The model returned an empty response.")

            ai_record = await self._persist_reply(request, chat_id, user_record, stream)
            completed = True
            yield CompleteFrame(message=ai_record, user_message=user_record)
        except AppException as exc:
            logger.warning(
                "Generation failed",
                chat_id=chat_id,
                model_id=request.model_id,
                code=exc.code,
                reason=exc.message,
            )
            await self._discard()
            yield ErrorFrame(message=exc.message, code=exc.code)
        except Exception:
            logger.exception("Generation crashed", chat_id=chat_id, model_id=request.model_id)
            await self._discard()
            yield ErrorFrame(message=INTERNAL_ERROR_MESSAGE, code="INTERNAL_ERROR")
        finally:
            if stream is not None:
                await stream.aclose()
            if not completed:
                logger.info("Stream closed without reply", chat_id=chat_id)

    async def _open_with_fallback(
        self,
        prepared: PreparedGeneration,
        user_api_key: str | None,
        chat_id: int | None,
    ) -> GenerationStream:
        credential = self._generation.resolve_credential(user_api_key)
        try:
            return await self._generation.open(prepared, credential)
        except UpstreamCredentialError:
            fallback = self._generation.server_credential()
            if credential.source != "user" or fallback is None:
                raise
            logger.warning(
                "User key rejected, retrying with server default key",
                chat_id=chat_id,
                model_id=prepared.model_id,
            )
            return await self._generation.open(prepared, fallback)

    async def _persist_reply(
        self,
        request: GenerationRequest,
        chat_id: int | None,
        user_record: MessageRecord | None,
        stream: GenerationStream,
    ) -> MessageRecord:
        result = stream.result
        if chat_id is None or self._chat_repo is None:
            return MessageRecord(
                role="ai",
                content=result.content,
                reasoning=result.reasoning or None,
                model_id=request.model_id,
                used_web_search=request.use_web_search,
                search_results=result.search_results,
            )

        search_results = (
            json.dumps([r.model_dump() for r in result.search_results])
            if result.search_results is not None
            else None
        )
        ai_message: Message = await self._chat_repo.create_message(
            chat_id,
            "ai",
            result.content,
            reasoning=result.reasoning or None,
            model_id=request.model_id,
            used_web_search=request.use_web_search,
            search_results=search_results,
            reply_to_id=user_record.id if user_record else None,
        )
        await self._chat_repo.commit()
        logger.info(
            "Reply persisted",
            chat_id=chat_id,
            message_id=ai_message.id,
            key_source=stream.credential.source,
        )
        return MessageRecord.model_validate(ai_message)

    async def _discard(self) -> None:
        if self._chat_repo is not None:
            await self._chat_repo.rollback()

    async def _load_history(self, chat_id: int) -> list[tuple[str, str]]:
        messages = await self.repo.find_messages_by_chat_id(chat_id)
        return [(m.role, m.content) for m in messages]

    async def _prompting_user_message(self, ai_message: Message) -> Message:
        if ai_message.reply_to_id is not None:
            prompt = await self.repo.find_message_by_id(ai_message.reply_to_id)
            if prompt is not None:
                return prompt
        prompt = await self.repo.find_previous_user_message(
            ai_message.chat_id, ai_message.id
        )
        if prompt is None:
            raise MessageNotFoundError()
        return prompt

    def _make_title(self, content: str) -> str:
        return content.strip()[: self._chat_config.title_max_length] or "New Chat"
