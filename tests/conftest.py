"""Shared fakes and fixtures."""

import asyncio
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from voyagr_chat.api.app import app, get_llm_service, get_repository, rate_limiter
from voyagr_chat.repositories.memory import InMemoryRepository


def frame(**data: Any) -> str:
    """Render one wire frame."""
    return f"data: {json.dumps(data)}\n\n"


class ScriptedCompletion:
    """Completion client replaying scripted chunks.

    With ``pause_at`` set, the stream stops before that chunk index until
    ``gate`` is set, and ``paused`` signals the stop.
    """

    def __init__(self, chunks: List[str], pause_at: Optional[int] = None, error: Optional[Exception] = None):
        self.chunks = chunks
        self.pause_at = pause_at
        self.error = error
        self.gate = asyncio.Event()
        self.paused = asyncio.Event()
        self.payloads: List[Dict[str, Any]] = []

    async def stream(self, payload: Dict[str, Any]):
        self.payloads.append(payload)
        for index, chunk in enumerate(self.chunks):
            if index == self.pause_at:
                self.paused.set()
                await self.gate.wait()
            yield chunk
        if self.pause_at is not None and self.pause_at >= len(self.chunks):
            self.paused.set()
            await self.gate.wait()
        if self.error is not None:
            raise self.error


class FakeTitleGenerator:
    def __init__(self, title: Optional[str] = "Tokyo Food Tour", error: Optional[Exception] = None):
        self.title = title
        self.error = error
        self.calls: List[Any] = []

    async def generate_title(self, conversation_id, messages):
        self.calls.append((conversation_id, [m.text for m in messages]))
        if self.error is not None:
            raise self.error
        return self.title


class FakeLLMService:
    """Stands in for the Gemini service behind the API."""

    def __init__(self, chunks: Optional[List[str]] = None, title: str = "Paris Hidden Gems", error: Optional[Exception] = None):
        self.chunks = chunks if chunks is not None else ["Paris ", "is lovely."]
        self.title = title
        self.error = error
        self.reply_calls: List[Dict[str, Any]] = []
        self.title_calls: List[List[str]] = []

    async def stream_reply(self, message, history, mode=None, destination=None):
        self.reply_calls.append(
            {"message": message, "history": list(history), "mode": mode, "destination": destination}
        )
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def generate_title(self, messages):
        self.title_calls.append([m.text for m in messages])
        return self.title


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0)


@pytest.fixture
def api():
    """Fresh repository and fake LLM behind the FastAPI app."""
    repository = InMemoryRepository()
    llm = FakeLLMService()
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_llm_service] = lambda: llm
    rate_limiter.requests.clear()
    yield SimpleNamespace(app=app, repository=repository, llm=llm)
    app.dependency_overrides.clear()
    rate_limiter.requests.clear()
