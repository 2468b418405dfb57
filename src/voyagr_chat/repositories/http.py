"""Repository backed by the conversation REST API."""

from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
import structlog

from ..domain.models import MAX_CONVERSATIONS, ChatMode, Conversation, Message, MessageRole
from .base import ConversationNotFoundError, Repository

logger = structlog.get_logger()


class HttpRepository(Repository):
    """Talks to ``/conversations`` on behalf of one signed-in user.

    Also implements title generation, which the API exposes per conversation.
    """

    def __init__(self, client: httpx.AsyncClient, user_id: str) -> None:
        self._client = client
        self.user_id = user_id

    @property
    def _headers(self) -> Dict[str, str]:
        return {"X-User-Id": self.user_id}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, url, headers=self._headers, **kwargs)
        if response.status_code == 404:
            raise ConversationNotFoundError(f"{method} {url} returned 404")
        response.raise_for_status()
        return response

    async def create_conversation(
        self, user_id: str, destination: str, mode: ChatMode, trip_id: Optional[UUID] = None
    ) -> Conversation:
        body: Dict[str, Any] = {"destination": destination, "chat_mode": mode.value}
        if trip_id is not None:
            body["trip_id"] = str(trip_id)
        response = await self._request("POST", "/conversations", json=body)
        conversation = Conversation.model_validate(response.json()["conversation"])
        logger.info("remote_conversation_created", conversation_id=str(conversation.id))
        return conversation

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        try:
            response = await self._request("GET", f"/conversations/{conversation_id}")
        except ConversationNotFoundError:
            logger.warning("conversation_not_found", conversation_id=str(conversation_id))
            return None
        return Conversation.model_validate(response.json()["conversation"])

    async def list_conversations(self, user_id: str, limit: int = MAX_CONVERSATIONS) -> List[Conversation]:
        response = await self._request("GET", "/conversations")
        conversations = [Conversation.model_validate(c) for c in response.json()["conversations"]]
        return conversations[:limit]

    async def add_message(self, message: Message) -> Message:
        body = message.model_dump(mode="json", exclude={"conversation_id"})
        response = await self._request(
            "POST", f"/conversations/{message.conversation_id}/messages", json=body
        )
        return Message.model_validate(response.json()["message"])

    async def get_messages(self, conversation_id: UUID) -> List[Message]:
        response = await self._request("GET", f"/conversations/{conversation_id}")
        return [Message.model_validate(m) for m in response.json()["messages"]]

    async def update_mode(self, conversation_id: UUID, mode: ChatMode) -> bool:
        return await self._patch(conversation_id, {"chat_mode": mode.value})

    async def update_title(self, conversation_id: UUID, title: str) -> bool:
        return await self._patch(conversation_id, {"title": title})

    async def _patch(self, conversation_id: UUID, body: Dict[str, Any]) -> bool:
        try:
            await self._request("PATCH", f"/conversations/{conversation_id}", json=body)
        except ConversationNotFoundError:
            return False
        return True

    async def delete_conversation(self, conversation_id: UUID) -> bool:
        try:
            await self._request("DELETE", f"/conversations/{conversation_id}")
        except ConversationNotFoundError:
            return False
        return True

    async def generate_title(self, conversation_id: UUID, messages: List[Message]) -> Optional[str]:
        body = {
            "messages": [
                {"role": MessageRole(m.role).value, "text": m.text} for m in messages
            ]
        }
        response = await self._request(
            "POST", f"/conversations/{conversation_id}/generate-title", json=body
        )
        return response.json().get("title")
