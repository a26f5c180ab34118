"""Reads a framed reply stream and dispatches each frame to a listener."""

from collections.abc import AsyncIterable
from dataclasses import dataclass
from typing import Protocol

import httpx
import structlog

from allchat.core.frame_codec import FrameDecoder, TruncatedStreamError
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

logger = structlog.get_logger()


class StreamError(Exception):
    """The stream ended with an error frame or without a terminal frame."""

    def __init__(self, message: str, code: str = "STREAM_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


@dataclass(frozen=True)
class Accumulator:
    """Text received so far for one placeholder."""

    content: str = ""
    reasoning: str = ""

    def add_content(self, word: str) -> "Accumulator":
        return Accumulator(self.content + word, self.reasoning)

    def add_reasoning(self, word: str) -> "Accumulator":
        return Accumulator(self.content, self.reasoning + word)


class StreamListener(Protocol):
    """Receives the effects of a stream, keyed by placeholder id."""

    def apply_chat_info(self, placeholder_id: str, frame: ChatInfoFrame) -> None: ...

    def apply_snapshot(self, placeholder_id: str, snapshot: Accumulator) -> None: ...

    def apply_key_usage(self, placeholder_id: str, frame: KeyUsageFrame) -> None: ...

    def confirm(self, placeholder_id: str, frame: CompleteFrame) -> None: ...


async def read_stream(
    response: httpx.Response, placeholder_id: str, listener: StreamListener
) -> CompleteFrame:
    """Consume a streaming response until its terminal frame.

    The response is always closed, including on early termination.
    """
    try:
        return await read_chunks(response.aiter_bytes(), placeholder_id, listener)
    finally:
        await response.aclose()


async def read_chunks(
    chunks: AsyncIterable[bytes], placeholder_id: str, listener: StreamListener
) -> CompleteFrame:
    """Decode raw chunks into frames and dispatch them in order.

    Returns the ``complete`` frame. Raises ``StreamError`` on an ``error``
    frame, a truncated final frame or an end of input without a terminal frame.
    """
    decoder = FrameDecoder()
    accumulator = Accumulator()

    try:
        async for chunk in chunks:
            for frame in decoder.feed(chunk):
                accumulator, done = _dispatch(frame, accumulator, placeholder_id, listener)
                if done is not None:
                    return done
        for frame in decoder.close():
            accumulator, done = _dispatch(frame, accumulator, placeholder_id, listener)
            if done is not None:
                return done
    except TruncatedStreamError as exc:
        raise StreamError("The connection closed in the middle of a reply.", "TRUNCATED_STREAM") from exc
    except httpx.HTTPError as exc:
        raise StreamError("The connection was lost while receiving the reply.", "NETWORK_ERROR") from exc

    raise StreamError("The reply ended before it was complete.", "TRUNCATED_STREAM")


def _dispatch(
    frame: StreamFrame,
    accumulator: Accumulator,
    placeholder_id: str,
    listener: StreamListener,
) -> tuple[Accumulator, CompleteFrame | None]:
    match frame:
        case ChatInfoFrame():
            listener.apply_chat_info(placeholder_id, frame)
        case ContentWordFrame(word=word):
            accumulator = accumulator.add_content(word)
            listener.apply_snapshot(placeholder_id, accumulator)
        case ReasoningWordFrame(word=word) | GoogleThoughtWordFrame(word=word):
            accumulator = accumulator.add_reasoning(word)
            listener.apply_snapshot(placeholder_id, accumulator)
        case KeyUsageFrame():
            listener.apply_key_usage(placeholder_id, frame)
        case CompleteFrame():
            listener.confirm(placeholder_id, frame)
            return accumulator, frame
        case ErrorFrame(message=message, code=code):
            logger.info("Stream reported an error", placeholder_id=placeholder_id, code=code)
            raise StreamError(message, code)
    return accumulator, None
