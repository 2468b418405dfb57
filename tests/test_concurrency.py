"""Test suite for concurrent operations."""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import ScriptedCompletion, frame
from voyagr_chat.controller.session import ChatSessionController
from voyagr_chat.domain.models import ChatMode, Message, MessageRole
from voyagr_chat.repositories.memory import InMemoryRepository
from voyagr_chat.streaming.buffer import ManualTickSource


@pytest.mark.asyncio
async def test_concurrent_conversations(api):
    """Test creating conversations for many users concurrently."""
    async with AsyncClient(transport=ASGITransport(app=api.app), base_url="http://test") as client:
        responses = await asyncio.gather(
            *[
                client.post("/conversations", json={"destination": "Tokyo"}, headers={"X-User-Id": f"user-{i}"})
                for i in range(10)
            ]
        )

        assert all(r.status_code == 201 for r in responses)
        conversation_ids = [r.json()["conversation"]["id"] for r in responses]
        assert len(set(conversation_ids)) == 10


@pytest.mark.asyncio
async def test_concurrent_messages(api):
    """Test posting messages concurrently to the same conversation."""
    headers = {"X-User-Id": "user-1"}
    async with AsyncClient(transport=ASGITransport(app=api.app), base_url="http://test") as client:
        response = await client.post("/conversations", json={"destination": "Hanoi"}, headers=headers)
        conversation_id = response.json()["conversation"]["id"]

        responses = await asyncio.gather(
            *[
                client.post(
                    f"/conversations/{conversation_id}/messages",
                    json={"role": "user", "text": f"Question {i}"},
                    headers=headers,
                )
                for i in range(8)
            ]
        )
        assert all(r.status_code == 201 for r in responses)

        response = await client.get(f"/conversations/{conversation_id}", headers=headers)
        data = response.json()
        assert len(data["messages"]) == 8
        assert data["conversation"]["message_count"] == 8


@pytest.mark.asyncio
async def test_concurrent_creation_respects_limit():
    repository = InMemoryRepository()

    await asyncio.gather(
        *[repository.create_conversation("user-1", f"City {i}", ChatMode.ASK) for i in range(12)]
    )

    assert len(await repository.list_conversations("user-1", limit=100)) == 5


@pytest.mark.asyncio
async def test_controllers_stream_independently():
    """Two sessions streaming at once do not mix their replies."""
    repository = InMemoryRepository()
    ticks = ManualTickSource()

    def controller_for(destination, reply):
        completion = ScriptedCompletion(
            [frame(type="content", content=reply), frame(type="done", citations=[])], pause_at=1
        )
        controller = ChatSessionController(
            repository, completion, tick_source=ticks, user_id="user-1", destination=destination
        )
        return controller, completion

    tokyo, tokyo_completion = controller_for("Tokyo", "Ramen in Shinjuku.")
    paris, paris_completion = controller_for("Paris", "Croissants in Le Marais.")

    tasks = [
        asyncio.create_task(tokyo.send_message("Food?")),
        asyncio.create_task(paris.send_message("Food?")),
    ]
    await asyncio.gather(tokyo_completion.paused.wait(), paris_completion.paused.wait())
    assert ticks.active == 2
    ticks.advance(2)

    tokyo_completion.gate.set()
    paris_completion.gate.set()
    await asyncio.gather(*tasks)

    assert tokyo.messages[1].text == "Ramen in Shinjuku."
    assert paris.messages[1].text == "Croissants in Le Marais."
    assert ticks.active == 0
    assert tokyo.session_id != paris.session_id


@pytest.mark.asyncio
async def test_concurrent_add_message_keeps_counts_consistent():
    repository = InMemoryRepository()
    conversation = await repository.create_conversation("user-1", "Cusco", ChatMode.ASK)

    await asyncio.gather(
        *[
            repository.add_message(
                Message(conversation_id=conversation.id, role=MessageRole.USER, text=f"msg {i}")
            )
            for i in range(20)
        ]
    )

    stored = await repository.get_conversation(conversation.id)
    assert stored.message_count == 20
    assert len(await repository.get_messages(conversation.id)) == 20
