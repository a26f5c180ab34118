"""Unit tests for the stream frame codec."""

import pytest

from allchat.core.frame_codec import (
    FrameDecodeError,
    FrameDecoder,
    TruncatedStreamError,
    decode_frame,
    encode_frame,
)
from allchat.schemas.chat_schema import MessageRecord
from allchat.schemas.frame_schema import (
    ChatInfoFrame,
    CompleteFrame,
    ContentWordFrame,
    ErrorFrame,
    GoogleThoughtWordFrame,
    KeyUsageFrame,
)


class TestEncodeFrame:
    def test_line_format(self) -> None:
        line = encode_frame(ContentWordFrame(word="Hi"))
        assert line == 'data: {"type":"content_word","word":"Hi"}\n'

    def test_one_line_per_frame(self) -> None:
        line = encode_frame(ContentWordFrame(word="line one\nline two"))
        assert line.count("\n") == 1
        assert line.endswith("\n")

    def test_error_frame_defaults_code(self) -> None:
        frame = decode_frame(encode_frame(ErrorFrame(message="boom")).rstrip("\n"))
        assert isinstance(frame, ErrorFrame)
        assert frame.code == "INTERNAL_ERROR"


class TestDecodeFrame:
    def test_ignores_blank_and_unprefixed_lines(self) -> None:
        assert decode_frame("") is None
        assert decode_frame(": keep-alive") is None
        assert decode_frame("event: message") is None

    def test_discriminates_on_type(self) -> None:
        frame = decode_frame('data: {"type":"google_thought_word","word":"hmm"}')
        assert isinstance(frame, GoogleThoughtWordFrame)
        assert frame.word == "hmm"

    def test_tolerates_crlf(self) -> None:
        frame = decode_frame('data: {"type":"key_usage","source":"user"}\r')
        assert isinstance(frame, KeyUsageFrame)
        assert frame.source == "user"

    def test_unknown_type_raises(self) -> None:
        with pytest.raises(FrameDecodeError):
            decode_frame('data: {"type":"mystery"}')

    def test_invalid_json_raises(self) -> None:
        with pytest.raises(FrameDecodeError):
            decode_frame("data: {not json")


class TestFrameDecoder:
    def test_frame_split_across_chunks(self) -> None:
        decoder = FrameDecoder()
        wire = encode_frame(ContentWordFrame(word="Hello")).encode()

        assert decoder.feed(wire[:10]) == []
        assert decoder.feed(wire[10:-1]) == []
        frames = decoder.feed(wire[-1:])

        assert frames == [ContentWordFrame(word="Hello")]

    def test_many_frames_in_one_chunk(self) -> None:
        decoder = FrameDecoder()
        wire = "".join(
            encode_frame(ContentWordFrame(word=w)) for w in ["Hel", "lo, ", "world"]
        ).encode()

        frames = decoder.feed(wire)

        assert [f.word for f in frames] == ["Hel", "lo, ", "world"]

    def test_multibyte_character_split_across_chunks(self) -> None:
        decoder = FrameDecoder()
        wire = encode_frame(ContentWordFrame(word="héllo 世界 🚀")).encode()
        # split inside the 4-byte rocket and inside a 3-byte CJK character
        rocket = wire.index("🚀".encode())
        cjk = wire.index("世".encode())
        chunks = [wire[: cjk + 1], wire[cjk + 1 : rocket + 2], wire[rocket + 2 :]]

        frames = []
        for chunk in chunks:
            frames.extend(decoder.feed(chunk))

        assert frames == [ContentWordFrame(word="héllo 世界 🚀")]

    def test_malformed_line_is_skipped(self) -> None:
        decoder = FrameDecoder()
        wire = (
            encode_frame(ContentWordFrame(word="a"))
            + "data: {broken\n"
            + encode_frame(ContentWordFrame(word="b"))
        )

        frames = decoder.feed(wire)

        assert [f.word for f in frames] == ["a", "b"]
        assert decoder.skipped == 1

    def test_invalid_utf8_line_is_skipped(self) -> None:
        decoder = FrameDecoder()
        wire = (
            encode_frame(ContentWordFrame(word="a")).encode()
            + b"data: \xff\xfe\n"
            + encode_frame(ContentWordFrame(word="b")).encode()
        )

        frames = decoder.feed(wire)

        assert [f.word for f in frames] == ["a", "b"]
        assert decoder.skipped == 1
        assert decoder.close() == []

    def test_accepts_text_chunks(self) -> None:
        decoder = FrameDecoder()
        frames = decoder.feed(encode_frame(KeyUsageFrame(source="server_default", chat_id=3)))
        assert frames == [KeyUsageFrame(source="server_default", chat_id=3)]

    def test_close_on_clean_boundary(self) -> None:
        decoder = FrameDecoder()
        decoder.feed(encode_frame(ContentWordFrame(word="x")))
        assert decoder.close() == []

    def test_close_with_partial_frame_raises(self) -> None:
        decoder = FrameDecoder()
        decoder.feed(b'data: {"type":"content_word","wo')
        with pytest.raises(TruncatedStreamError):
            decoder.close()

    def test_close_inside_character_raises(self) -> None:
        decoder = FrameDecoder()
        decoder.feed("é".encode()[:1])
        with pytest.raises(TruncatedStreamError):
            decoder.close()

    def test_nested_records_survive(self) -> None:
        decoder = FrameDecoder()
        info = ChatInfoFrame(user_message=MessageRecord(id=7, chat_id=2, role="user", content="2+2?"))
        done = CompleteFrame(message=MessageRecord(id=8, chat_id=2, role="ai", content="4"))

        frames = decoder.feed((encode_frame(info) + encode_frame(done)).encode())

        assert isinstance(frames[0], ChatInfoFrame)
        assert frames[0].user_message is not None
        assert frames[0].user_message.content == "2+2?"
        assert isinstance(frames[1], CompleteFrame)
        assert frames[1].message.content == "4"
