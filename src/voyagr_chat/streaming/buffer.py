"""Paced release of streamed text.

Streamed text is appended to a backlog; a periodic tick moves a small slice
of the backlog into the visible message. ``flush`` is the only way text
reaches the message once a request ends, and it always releases the whole
backlog, so pacing never loses characters.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import structlog

logger = structlog.get_logger()

# Pacing only; neither value affects what text is finally shown.
TICK_INTERVAL = 0.02
SLICE_SIZE = 4


class BufferBusyError(RuntimeError):
    """Raised when a buffer is started for a second message while running."""


class TickHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        """Stop further ticks. Safe to call more than once."""
        pass


class TickSource(ABC):
    """Schedules a callback at a fixed period."""

    @abstractmethod
    def start(self, interval: float, callback: Callable[[], None]) -> TickHandle:
        """Start calling ``callback`` every ``interval`` seconds."""
        pass


class _AsyncioTickHandle(TickHandle):
    def __init__(self, loop: asyncio.AbstractEventLoop, interval: float, callback: Callable[[], None]):
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._timer: Optional[asyncio.TimerHandle] = None
        self._cancelled = False
        self._schedule()

    def _schedule(self) -> None:
        self._timer = self._loop.call_later(self._interval, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        try:
            self._callback()
        finally:
            if not self._cancelled:
                self._schedule()

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class AsyncioTickSource(TickSource):
    """Ticks driven by the running event loop's timer queue."""

    def start(self, interval: float, callback: Callable[[], None]) -> TickHandle:
        return _AsyncioTickHandle(asyncio.get_running_loop(), interval, callback)


class _ManualTickHandle(TickHandle):
    def __init__(self, source: "ManualTickSource", callback: Callable[[], None]):
        self._source = source
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._source.handles.remove(self)


class ManualTickSource(TickSource):
    """Tick source advanced explicitly, for deterministic pacing in tests."""

    def __init__(self) -> None:
        self.handles: List[_ManualTickHandle] = []

    def start(self, interval: float, callback: Callable[[], None]) -> TickHandle:
        handle = _ManualTickHandle(self, callback)
        self.handles.append(handle)
        return handle

    @property
    def active(self) -> int:
        return len(self.handles)

    def advance(self, ticks: int = 1) -> None:
        for _ in range(ticks):
            for handle in list(self.handles):
                if handle.active:
                    handle.callback()


class TokenReleaseBuffer:
    """Backlog of streamed text released to one message at a steady pace.

    ``on_release(message_id, chunk)`` receives every released slice in order.
    At most one timer runs per buffer.
    """

    def __init__(
        self,
        tick_source: TickSource,
        on_release: Callable[[str, str], None],
        interval: float = TICK_INTERVAL,
        slice_size: int = SLICE_SIZE,
    ) -> None:
        if slice_size < 1:
            raise ValueError("slice_size must be positive")
        self._tick_source = tick_source
        self._on_release = on_release
        self.interval = interval
        self.slice_size = slice_size
        self._backlog = ""
        self._handle: Optional[TickHandle] = None
        self._message_id: Optional[str] = None

    @property
    def backlog(self) -> str:
        return self._backlog

    @property
    def running(self) -> bool:
        return self._handle is not None

    @property
    def message_id(self) -> Optional[str]:
        return self._message_id

    def push(self, text: str) -> None:
        self._backlog += text

    def ensure_started(self, message_id: str) -> None:
        """Start the timer for ``message_id`` unless it is already running."""
        if self._handle is not None:
            if self._message_id != message_id:
                raise BufferBusyError(
                    f"Buffer is releasing message {self._message_id}, cannot start {message_id}"
                )
            return
        self._message_id = message_id
        self._handle = self._tick_source.start(self.interval, self._tick)
        logger.debug("token_buffer_started", message_id=message_id)

    def _tick(self) -> None:
        if not self._backlog or self._message_id is None:
            return
        chunk = self._backlog[: self.slice_size]
        self._backlog = self._backlog[self.slice_size :]
        self._on_release(self._message_id, chunk)

    def flush(self) -> str:
        """Stop the timer and release the entire remaining backlog at once."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        remaining, self._backlog = self._backlog, ""
        message_id, self._message_id = self._message_id, None
        if remaining and message_id is not None:
            self._on_release(message_id, remaining)
            logger.debug("token_buffer_flushed", message_id=message_id, released=len(remaining))
        return remaining
