"""Tests for stream event decoding and frame splitting."""

import pytest

from conftest import frame
from voyagr_chat.domain.events import (
    CardsEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    MalformedFrameError,
    ToolCallsEvent,
    UnknownEvent,
    VideoAnalysisEvent,
    decode_event,
    encode_event,
)
from voyagr_chat.streaming.frames import FrameDecoder


def test_decode_known_events():
    assert decode_event('{"type": "content", "content": "Hi"}') == ContentEvent(content="Hi")
    assert decode_event('{"type": "done", "citations": ["a"]}').citations == ["a"]
    assert decode_event('{"type": "done"}').citations is None
    assert decode_event('{"type": "error", "error": "boom"}') == ErrorEvent(error="boom")

    cards = decode_event('{"type": "cards", "cards": [{"name": "Louvre"}]}')
    assert isinstance(cards, CardsEvent)
    assert cards.cards == [{"name": "Louvre"}]


def test_decode_camel_case_payload_fields():
    analysis = decode_event('{"type": "videoAnalysis", "videoAnalysis": {"summary": "x"}}')
    assert isinstance(analysis, VideoAnalysisEvent)
    assert analysis.video_analysis == {"summary": "x"}

    calls = decode_event('{"type": "toolCalls", "toolCalls": [{"name": "search"}]}')
    assert isinstance(calls, ToolCallsEvent)
    assert calls.tool_calls == [{"name": "search"}]


def test_unknown_type_is_preserved():
    event = decode_event('{"type": "weather", "forecast": "rain"}')
    assert isinstance(event, UnknownEvent)
    assert event.type == "weather"
    assert event.payload == {"forecast": "rain"}


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        '"just a string"',
        '{"content": "missing type"}',
        '{"type": 7}',
        '{"type": "content"}',
        '{"type": "cards", "cards": "not a list"}',
    ],
)
def test_malformed_payloads_raise(payload):
    with pytest.raises(MalformedFrameError):
        decode_event(payload)


def test_encode_uses_wire_field_names():
    wire = encode_event(ToolCallsEvent(tool_calls=[{"name": "search"}]))
    assert wire.startswith("data: ")
    assert wire.endswith("\n\n")
    assert '"toolCalls"' in wire
    assert decode_event(wire[len("data: "):-2]).tool_calls == [{"name": "search"}]


def test_decoder_yields_events_in_order():
    decoder = FrameDecoder()
    events = decoder.feed(frame(type="content", content="a") + frame(type="done", citations=[]))
    assert [e.type for e in events] == ["content", "done"]


def test_decoder_holds_partial_frames():
    decoder = FrameDecoder()
    wire = frame(type="content", content="Kyoto temples")

    assert decoder.feed(wire[:4]) == []
    assert decoder.feed(wire[4:20]) == []
    events = decoder.feed(wire[20:])

    assert events == [ContentEvent(content="Kyoto temples")]


def test_decoder_accepts_crlf_line_endings():
    decoder = FrameDecoder()
    events = decoder.feed('data: {"type": "content", "content": "x"}\r\n\r\n')
    assert events == [ContentEvent(content="x")]


def test_decoder_joins_crlf_split_across_chunks():
    decoder = FrameDecoder()

    first = decoder.feed('data: {"type": "content", "content": "a"}\r\n\r')
    second = decoder.feed('\ndata: {"type": "content", "content": "b"}\r\n\r\n')

    assert first == []
    assert second == [ContentEvent(content="a"), ContentEvent(content="b")]
    assert decoder.skipped == 0


def test_decoder_skips_malformed_frames():
    decoder = FrameDecoder()
    events = decoder.feed(
        frame(type="content", content="before")
        + "data: {broken\n\n"
        + frame(type="content", content="after")
    )

    assert [e.content for e in events] == ["before", "after"]
    assert decoder.skipped == 1


def test_decoder_ignores_blocks_without_data_prefix():
    decoder = FrameDecoder()
    events = decoder.feed(": keep-alive\n\n" + frame(type="done"))
    assert events == [DoneEvent()]
    assert decoder.skipped == 0


def test_close_decodes_unterminated_trailing_frame():
    decoder = FrameDecoder()
    assert decoder.feed('data: {"type": "done", "citations": ["c"]}') == []

    events = decoder.close()

    assert events == [DoneEvent(citations=["c"])]
    assert decoder.close() == []
