"""Line-oriented codec for the streaming response protocol.

Every frame is one line ``data: <json>\\n`` where the JSON object carries a
``type`` discriminator. The decoder accepts arbitrary network chunks (bytes or
text), keeps partial lines and split multi-byte characters buffered, and only
returns frames once their terminating newline has arrived.
"""

import structlog
from pydantic import TypeAdapter, ValidationError

from allchat.schemas.frame_schema import StreamFrame

logger = structlog.get_logger()

FRAME_PREFIX = "data: "

_frame_adapter: TypeAdapter[StreamFrame] = TypeAdapter(StreamFrame)


class FrameDecodeError(ValueError):
    """A single line could not be decoded into a frame."""


class TruncatedStreamError(ValueError):
    """The byte stream ended in the middle of a frame."""


def encode_frame(frame: StreamFrame) -> str:
    """Serialise a frame into its wire line."""
    return f"{FRAME_PREFIX}{frame.model_dump_json()}\n"


def decode_frame(line: str) -> StreamFrame | None:
    """Decode one wire line.

    Returns ``None`` for blank lines and lines without the frame prefix
    (comments, keep-alives). Raises ``FrameDecodeError`` for a prefixed line
    whose payload is not a known frame.
    """
    line = line.rstrip("\r")
    if not line.startswith(FRAME_PREFIX):
        return None
    payload = line[len(FRAME_PREFIX):]
    try:
        return _frame_adapter.validate_json(payload)
    except ValidationError as exc:
        raise FrameDecodeError(str(exc)) from exc


class FrameDecoder:
    """Incremental decoder turning network chunks into frames."""

    def __init__(self) -> None:
        self._buffer = b""
        self.skipped = 0

    def feed(self, chunk: bytes | str) -> list[StreamFrame]:
        """Consume a chunk and return every frame completed by it."""
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer += chunk
        return self._drain()

    def close(self) -> list[StreamFrame]:
        """Flush at end of stream.

        Raises ``TruncatedStreamError`` if bytes of an unfinished frame remain.
        """
        frames = self._drain()
        if self._buffer.strip():
            raise TruncatedStreamError("stream ended inside a frame")
        self._buffer = b""
        return frames

    def _drain(self) -> list[StreamFrame]:
        # A newline byte never occurs inside a multi-byte UTF-8 sequence, so
        # every complete line can be decoded on its own.
        frames: list[StreamFrame] = []
        while b"\n" in self._buffer:
            raw, self._buffer = self._buffer.split(b"\n", 1)
            try:
                frame = decode_frame(raw.decode("utf-8"))
            except (UnicodeDecodeError, FrameDecodeError) as exc:
                self.skipped += 1
                logger.warning(
                    "Skipping malformed frame",
                    line=raw[:200].decode("utf-8", "replace"),
                    error=str(exc),
                )
                continue
            if frame is not None:
                frames.append(frame)
        return frames
