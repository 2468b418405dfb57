"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import List, Optional
from uuid import UUID

from ..domain.models import MAX_CONVERSATIONS, ChatMode, Conversation, Message


class ConversationNotFoundError(ValueError):
    """Raised when an operation targets a conversation that does not exist."""


class Repository(ABC):
    """Abstract base class for conversation stores."""

    @abstractmethod
    async def create_conversation(
        self, user_id: str, destination: str, mode: ChatMode, trip_id: Optional[UUID] = None
    ) -> Conversation:
        """Create a new conversation, dropping the user's oldest beyond the limit."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def list_conversations(self, user_id: str, limit: int = MAX_CONVERSATIONS) -> List[Conversation]:
        """List a user's conversations, most recently updated first."""
        pass

    @abstractmethod
    async def add_message(self, message: Message) -> Message:
        """Add a message to a conversation."""
        pass

    @abstractmethod
    async def get_messages(self, conversation_id: UUID) -> List[Message]:
        """Get messages for a conversation in insertion order."""
        pass

    @abstractmethod
    async def update_mode(self, conversation_id: UUID, mode: ChatMode) -> bool:
        pass

    @abstractmethod
    async def update_title(self, conversation_id: UUID, title: str) -> bool:
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID) -> bool:
        pass

    async def find_by_destination(self, user_id: str, destination: str) -> Optional[Conversation]:
        """Most recent conversation of ``user_id`` about ``destination``."""
        for conversation in await self.list_conversations(user_id):
            if conversation.matches_destination(destination):
                return conversation
        return None
