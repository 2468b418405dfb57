"""In-memory repository implementation."""

import asyncio
from typing import Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.models import (
    MAX_CONVERSATIONS,
    PREVIEW_LENGTH,
    ChatMode,
    Conversation,
    Message,
    utcnow,
)
from .base import ConversationNotFoundError, Repository

logger = structlog.get_logger()


class InMemoryRepository(Repository):
    """Async-safe in-memory conversation store."""

    def __init__(self, max_conversations: int = MAX_CONVERSATIONS) -> None:
        self.max_conversations = max_conversations
        self._conversations: Dict[UUID, Conversation] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._async_lock = asyncio.Lock()
        logger.info("repository_initialized", max_conversations=max_conversations)

    async def create_conversation(
        self, user_id: str, destination: str, mode: ChatMode, trip_id: Optional[UUID] = None
    ) -> Conversation:
        """Create a new conversation."""
        conversation = Conversation(
            user_id=user_id, destination=destination, chat_mode=mode, trip_id=trip_id
        )
        async with self._async_lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            self._enforce_limit(user_id)
            logger.info(
                "conversation_created",
                conversation_id=str(conversation.id),
                destination=destination,
                chat_mode=mode.value,
            )
        return conversation

    def _enforce_limit(self, user_id: str) -> None:
        owned = sorted(
            (c for c in self._conversations.values() if c.user_id == user_id),
            key=lambda c: c.updated_at,
        )
        while len(owned) > self.max_conversations:
            oldest = owned.pop(0)
            del self._conversations[oldest.id]
            self._messages.pop(oldest.id, None)
            logger.info("conversation_evicted", conversation_id=str(oldest.id), user_id=user_id)

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
            return conversation

    async def list_conversations(self, user_id: str, limit: int = MAX_CONVERSATIONS) -> List[Conversation]:
        """List a user's conversations, most recently updated first."""
        async with self._async_lock:
            conversations = sorted(
                (c for c in self._conversations.values() if c.user_id == user_id),
                key=lambda c: c.updated_at,
                reverse=True,
            )
            return conversations[:limit]

    async def add_message(self, message: Message) -> Message:
        """Add a message to a conversation."""
        async with self._async_lock:
            conversation = self._conversations.get(message.conversation_id)
            if not conversation:
                logger.error(
                    "conversation_not_found_for_message",
                    conversation_id=str(message.conversation_id),
                )
                raise ConversationNotFoundError(f"Conversation {message.conversation_id} not found")

            messages = self._messages.setdefault(message.conversation_id, [])
            messages.append(message)
            conversation.message_count = len(messages)
            conversation.last_message_preview = message.text[:PREVIEW_LENGTH]
            conversation.updated_at = max(message.created_at, conversation.updated_at)

            logger.info(
                "message_added",
                conversation_id=str(message.conversation_id),
                message_role=message.role.value,
            )
            return message

    async def get_messages(self, conversation_id: UUID) -> List[Message]:
        """Get messages for a conversation in insertion order."""
        async with self._async_lock:
            if conversation_id not in self._conversations:
                logger.error(
                    "conversation_not_found_for_messages",
                    conversation_id=str(conversation_id),
                )
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            return list(self._messages.get(conversation_id, []))

    async def update_mode(self, conversation_id: UUID, mode: ChatMode) -> bool:
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
                return False
            conversation.chat_mode = mode
            conversation.updated_at = utcnow()
            logger.info("conversation_mode_updated", conversation_id=str(conversation_id), chat_mode=mode.value)
            return True

    async def update_title(self, conversation_id: UUID, title: str) -> bool:
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
                return False
            conversation.title = title
            conversation.updated_at = utcnow()
            logger.info("conversation_title_updated", conversation_id=str(conversation_id))
            return True

    async def delete_conversation(self, conversation_id: UUID) -> bool:
        async with self._async_lock:
            if self._conversations.pop(conversation_id, None) is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
                return False
            self._messages.pop(conversation_id, None)
            logger.info("conversation_deleted", conversation_id=str(conversation_id))
            return True
