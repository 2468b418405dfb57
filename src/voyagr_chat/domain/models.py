"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

# A user keeps at most this many conversations; the oldest is dropped first.
MAX_CONVERSATIONS = 5

PREVIEW_LENGTH = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatMode(str, Enum):
    """How the assistant answers: short answers with place cards, or a day plan."""

    ASK = "ask"
    ITINERARY = "itinerary"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """Message model.

    ``chat_mode`` is the mode captured when the message was sent, not the
    conversation's current mode.
    """

    id: UUID = Field(default_factory=uuid4)
    conversation_id: Optional[UUID] = None
    trip_id: Optional[UUID] = None
    role: MessageRole = MessageRole.USER
    text: str = ""
    chat_mode: ChatMode = ChatMode.ASK
    created_at: datetime = Field(default_factory=utcnow)

    # Structured attachments, set atomically from stream events
    cards: Optional[List[Dict[str, Any]]] = None
    videos: Optional[List[Dict[str, Any]]] = None
    video_analysis: Optional[Dict[str, Any]] = None
    smart_video_result: Optional[Dict[str, Any]] = None
    itinerary: Optional[Dict[str, Any]] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    citations: Optional[List[Any]] = None


class Conversation(BaseModel):
    """Conversation model."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    destination: str
    chat_mode: ChatMode = ChatMode.ASK
    title: Optional[str] = None
    trip_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    message_count: int = 0
    last_message_preview: str = ""

    def model_post_init(self, __context: Any) -> None:
        if self.title is None:
            self.title = f"Chat about {self.destination}"

    def matches_destination(self, destination: Optional[str]) -> bool:
        return bool(destination) and self.destination.lower() == destination.lower()


class GuestConversation(BaseModel):
    """Conversation kept only in local guest storage."""

    id: UUID = Field(default_factory=uuid4)
    destination: str
    chat_mode: ChatMode = ChatMode.ASK
    title: str = "New Chat"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    message_count: int = 0

    def matches_destination(self, destination: Optional[str]) -> bool:
        return bool(destination) and self.destination.lower() == destination.lower()
