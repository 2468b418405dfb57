"""Incremental decoder for the chat stream framing."""

from typing import List

import structlog

from ..domain.events import (
    FRAME_PREFIX,
    FRAME_SEPARATOR,
    MalformedFrameError,
    StreamEvent,
    decode_event,
)

logger = structlog.get_logger()


class FrameDecoder:
    """Turns arbitrarily split text chunks into stream events.

    Network chunks do not line up with frames, so a partial frame is held
    until its terminating blank line arrives. Malformed frames are logged
    and skipped without affecting the frames around them.
    """

    def __init__(self) -> None:
        self._pending = ""
        self.skipped = 0

    def feed(self, chunk: str) -> List[StreamEvent]:
        """Consume a chunk and return the events completed by it, in order."""
        # A CRLF pair may straddle two chunks
        self._pending = (self._pending + chunk).replace("\r\n", "\n")
        blocks = self._pending.split(FRAME_SEPARATOR)
        self._pending = blocks.pop()
        return self._decode_blocks(blocks)

    def close(self) -> List[StreamEvent]:
        """Decode a trailing frame that was not followed by a blank line."""
        remainder, self._pending = self._pending, ""
        if not remainder.strip():
            return []
        return self._decode_blocks([remainder])

    def _decode_blocks(self, blocks: List[str]) -> List[StreamEvent]:
        events = []
        for block in blocks:
            block = block.strip("\n")
            if not block.startswith(FRAME_PREFIX):
                if block:
                    logger.debug("stream_block_ignored", block=block[:80])
                continue
            try:
                events.append(decode_event(block[len(FRAME_PREFIX):]))
            except MalformedFrameError as e:
                self.skipped += 1
                logger.warning("stream_frame_malformed", error=str(e), frame=block[:200])
        return events
