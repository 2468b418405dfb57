"""Tests for the token-release buffer."""

import asyncio

import pytest

from voyagr_chat.streaming.buffer import (
    AsyncioTickSource,
    BufferBusyError,
    ManualTickSource,
    TokenReleaseBuffer,
)


class Recorder:
    def __init__(self):
        self.released = []

    def __call__(self, message_id, chunk):
        self.released.append((message_id, chunk))

    @property
    def text(self):
        return "".join(chunk for _, chunk in self.released)


def make_buffer(slice_size=4):
    ticks = ManualTickSource()
    recorder = Recorder()
    return TokenReleaseBuffer(ticks, recorder, slice_size=slice_size), ticks, recorder


def test_each_tick_releases_one_slice():
    buffer, ticks, recorder = make_buffer()
    buffer.push("Tokyo has great food.")
    buffer.ensure_started("m1")

    ticks.advance()
    assert recorder.released == [("m1", "Toky")]
    ticks.advance(2)
    assert recorder.text == "Tokyo has gr"
    assert buffer.backlog == "eat food."


def test_empty_backlog_tick_releases_nothing():
    buffer, ticks, recorder = make_buffer()
    buffer.ensure_started("m1")
    ticks.advance(3)
    assert recorder.released == []
    assert buffer.running


def test_flush_releases_remaining_backlog_and_stops_timer():
    buffer, ticks, recorder = make_buffer()
    buffer.push("Louvre then lunch")
    buffer.ensure_started("m1")
    ticks.advance()

    remaining = buffer.flush()

    assert remaining == "re then lunch"
    assert recorder.text == "Louvre then lunch"
    assert not buffer.running
    assert buffer.message_id is None
    assert ticks.active == 0


def test_flush_when_idle_is_harmless():
    buffer, ticks, recorder = make_buffer()
    assert buffer.flush() == ""
    assert buffer.flush() == ""
    assert recorder.released == []


def test_ensure_started_is_idempotent_for_same_message():
    buffer, ticks, _ = make_buffer()
    buffer.ensure_started("m1")
    buffer.ensure_started("m1")
    assert ticks.active == 1


def test_starting_second_message_while_running_raises():
    buffer, _, _ = make_buffer()
    buffer.ensure_started("m1")
    with pytest.raises(BufferBusyError):
        buffer.ensure_started("m2")


def test_buffer_can_be_reused_after_flush():
    buffer, ticks, recorder = make_buffer()
    buffer.push("one")
    buffer.ensure_started("m1")
    buffer.flush()

    buffer.push("two")
    buffer.ensure_started("m2")
    ticks.advance()

    assert recorder.released == [("m1", "one"), ("m2", "two")]


def test_slice_size_must_be_positive():
    with pytest.raises(ValueError):
        TokenReleaseBuffer(ManualTickSource(), Recorder(), slice_size=0)


@pytest.mark.asyncio
async def test_asyncio_tick_source_releases_over_time():
    recorder = Recorder()
    buffer = TokenReleaseBuffer(AsyncioTickSource(), recorder, interval=0.001, slice_size=2)
    buffer.push("abcdef")
    buffer.ensure_started("m1")

    await asyncio.sleep(0.05)

    assert recorder.text == "abcdef"
    assert all(len(chunk) <= 2 for _, chunk in recorder.released)
    buffer.flush()
    assert not buffer.running
