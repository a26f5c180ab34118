"""Typed frames of the streaming response protocol."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from allchat.schemas.chat_schema import ChatSummary, MessageRecord

KeySource = Literal["server_default", "user"]


class ChatInfoFrame(BaseModel):
    """Newly created chat and/or the confirmed user message."""

    type: Literal["chat_info"] = "chat_info"
    chat: ChatSummary | None = None
    user_message: MessageRecord | None = None


class ContentWordFrame(BaseModel):
    """Incremental answer fragment."""

    type: Literal["content_word"] = "content_word"
    word: str


class ReasoningWordFrame(BaseModel):
    """Incremental reasoning fragment."""

    type: Literal["reasoning_word"] = "reasoning_word"
    word: str


class GoogleThoughtWordFrame(BaseModel):
    """Incremental thought fragment from a Google model."""

    type: Literal["google_thought_word"] = "google_thought_word"
    word: str


class KeyUsageFrame(BaseModel):
    """Which credential served the generation."""

    type: Literal["key_usage"] = "key_usage"
    source: KeySource
    chat_id: int | None = None


class CompleteFrame(BaseModel):
    """Terminal success; carries the confirmed AI message."""

    type: Literal["complete"] = "complete"
    message: MessageRecord
    user_message: MessageRecord | None = None


class ErrorFrame(BaseModel):
    """Terminal failure with a human-readable message."""

    type: Literal["error"] = "error"
    message: str
    code: str = "INTERNAL_ERROR"


StreamFrame = Annotated[
    Union[
        ChatInfoFrame,
        ContentWordFrame,
        ReasoningWordFrame,
        GoogleThoughtWordFrame,
        KeyUsageFrame,
        CompleteFrame,
        ErrorFrame,
    ],
    Field(discriminator="type"),
]
