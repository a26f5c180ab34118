"""Chat request and response schemas."""

import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelRequest(BaseModel):
    """Request body accepting both camelCase (browser client) and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatTurn(BaseModel):
    """One prior turn supplied by the client."""

    role: Literal["user", "ai", "assistant", "system"]
    content: str


class SearchResult(BaseModel):
    """Single web search hit forwarded to the client."""

    title: str = ""
    url: str
    content: str = ""


# --- Requests ---


class SendMessageRequest(CamelRequest):
    """Send a new user message, optionally starting a new chat."""

    messages: list[ChatTurn] = Field(..., min_length=1)
    chat_id: int | None = None
    model_id: str | None = None
    use_web_search: bool = False
    user_api_key: str | None = None
    user_tavily_key: str | None = None
    file_data: str | None = None
    file_mime_type: str | None = None
    file_name: str | None = None

    @field_validator("messages")
    @classmethod
    def last_turn_is_user(cls, value: list[ChatTurn]) -> list[ChatTurn]:
        if value[-1].role != "user" or not value[-1].content.strip():
            raise ValueError("the last message must be a non-empty user message")
        return value


class ResubmitRequest(CamelRequest):
    """Edit a user message or regenerate the reply that follows it."""

    message_id: int
    chat_id: int
    new_content: str | None = None
    model_id: str | None = None
    use_web_search: bool = False
    user_api_key: str | None = None
    user_tavily_key: str | None = None

    @field_validator("new_content")
    @classmethod
    def new_content_not_blank(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("new content must not be blank")
        return value


class EditMessageRequest(ResubmitRequest):
    """Edit a user message; new content is required."""

    new_content: str = Field(..., min_length=1)


class BranchRequest(CamelRequest):
    """Create a new chat from a prefix of an existing one."""

    source_chat_id: int
    from_ai_message_id: int
    new_model_id: str | None = None


class GuestStreamRequest(CamelRequest):
    """Unauthenticated, unpersisted generation request."""

    messages: list[ChatTurn] = Field(..., min_length=1)
    model_id: str | None = None

    @field_validator("messages")
    @classmethod
    def last_turn_is_user(cls, value: list[ChatTurn]) -> list[ChatTurn]:
        if value[-1].role != "user" or not value[-1].content.strip():
            raise ValueError("the last message must be a non-empty user message")
        return value


class UpdateChatRequest(CamelRequest):
    """Rename a chat or change its model."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    model_id: str | None = Field(default=None, min_length=1)


class GuestMessage(CamelRequest):
    """Message stored on a guest device."""

    role: Literal["user", "ai"]
    content: str
    reasoning: str | None = None
    model_id: str | None = None
    used_web_search: bool = False
    search_results: list[SearchResult] | None = None


class GuestChat(CamelRequest):
    """Chat stored on a guest device."""

    title: str = "New Chat"
    model_id: str | None = None
    messages: list[GuestMessage] = Field(default_factory=list)


class MigrateGuestRequest(CamelRequest):
    """Guest history to import into the caller's account."""

    guest_chats: list[GuestChat] = Field(..., min_length=1)


class VerifyKeyRequest(CamelRequest):
    """User-supplied provider key to verify."""

    api_key: str = Field(..., min_length=1)


# --- Responses ---


class MessageRecord(BaseModel):
    """Server-confirmed (or guest, unpersisted) message."""

    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    chat_id: int | None = None
    role: Literal["user", "ai"]
    content: str
    reasoning: str | None = None
    image_url: str | None = None
    file_metadata: dict[str, Any] | None = None
    used_web_search: bool = False
    edit_count: int = 0
    model_id: str | None = None
    search_results: list[SearchResult] | None = None
    reply_to_id: int | None = None
    created_at: datetime | None = None

    @field_validator("search_results", "file_metadata", mode="before")
    @classmethod
    def parse_json_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value


class ChatSummary(BaseModel):
    """Chat row without its messages."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    model_id: str
    created_at: datetime | None = None
    source_chat_id: int | None = None
    branch_from_message_id: int | None = None
    share_id: str | None = None


class ChatTreeEntry(ChatSummary):
    """Chat summary positioned in the flattened branch forest."""

    depth: int = 0


class ChatDetail(BaseModel):
    """Chat with its ordered messages."""

    chat: ChatSummary
    messages: list[MessageRecord]


class DeleteMessageResponse(BaseModel):
    """Outcome of a message deletion."""

    deleted_ids: list[int]
    chat_deleted: bool = False
    deleted_chat_id: int | None = None


class DeleteChatResponse(BaseModel):
    """Outcome of a chat deletion."""

    deleted_chat_id: int
    promoted_chat_ids: list[int] = Field(default_factory=list)


class ShareResponse(BaseModel):
    """Share id assigned to a chat."""

    share_id: str


class MigrateGuestResponse(BaseModel):
    """Number of guest chats imported."""

    migrated_count: int
    chat_ids: list[int] = Field(default_factory=list)


class KeyVerificationResponse(BaseModel):
    """Result of checking a provider key."""

    valid: bool
    message: str
