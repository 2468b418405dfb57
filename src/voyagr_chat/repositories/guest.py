"""Local storage for guests who chat without signing in.

Guests get a small message quota; their history lives only in a local
key-value storage and never reaches the conversation store.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Union
from uuid import UUID

import structlog
from pydantic import TypeAdapter, ValidationError

from ..domain.models import ChatMode, GuestConversation, Message, MessageRole, utcnow

logger = structlog.get_logger()

GUEST_CONVERSATIONS_KEY = "voyagr_guest_conversations"
GUEST_MESSAGES_KEY = "voyagr_guest_messages"

# One exchange: the user message and its reply.
DEFAULT_GUEST_MESSAGE_LIMIT = 2

TITLE_LENGTH = 50

_conversations_adapter = TypeAdapter(List[GuestConversation])
_messages_adapter = TypeAdapter(List[Message])


class KeyValueStorage(ABC):
    """String key-value storage, like a browser's localStorage."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass


class InMemoryStorage(KeyValueStorage):
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage(KeyValueStorage):
    """Keeps all keys in a single JSON object on disk."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("guest_storage_unreadable", path=str(self.path), error=str(e))
            return {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)


class GuestStore:
    """Guest conversations and messages with a message quota."""

    def __init__(self, storage: Optional[KeyValueStorage] = None, limit: int = DEFAULT_GUEST_MESSAGE_LIMIT) -> None:
        self.storage = storage or InMemoryStorage()
        self.limit = limit
        self._conversations: List[GuestConversation] = []
        self._messages: List[Message] = []
        self._load()

    def _load(self) -> None:
        try:
            raw_conversations = self.storage.get(GUEST_CONVERSATIONS_KEY)
            raw_messages = self.storage.get(GUEST_MESSAGES_KEY)
            self._conversations = (
                _conversations_adapter.validate_json(raw_conversations) if raw_conversations else []
            )
            self._messages = _messages_adapter.validate_json(raw_messages) if raw_messages else []
        except (OSError, ValidationError) as e:
            logger.warning("guest_data_load_failed", error=str(e))
            self._conversations, self._messages = [], []

    def _save(self) -> None:
        try:
            self.storage.set(
                GUEST_CONVERSATIONS_KEY, _conversations_adapter.dump_json(self._conversations).decode()
            )
            self.storage.set(GUEST_MESSAGES_KEY, _messages_adapter.dump_json(self._messages).decode())
        except OSError as e:
            logger.warning("guest_data_save_failed", error=str(e))

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def limit_reached(self) -> bool:
        return len(self._messages) >= self.limit

    def list_conversations(self) -> List[GuestConversation]:
        return sorted(self._conversations, key=lambda c: c.updated_at, reverse=True)

    def find_by_destination(self, destination: str) -> Optional[GuestConversation]:
        for conversation in self._conversations:
            if conversation.matches_destination(destination):
                return conversation
        return None

    def get_messages(self, conversation_id: UUID) -> List[Message]:
        return [m for m in self._messages if m.conversation_id == conversation_id]

    def append_message(self, destination: str, role: MessageRole, text: str, chat_mode: ChatMode) -> Message:
        """Store a message in the guest conversation for ``destination``."""
        now = utcnow()
        conversation = self.find_by_destination(destination)
        if conversation is None:
            conversation = GuestConversation(
                destination=destination,
                chat_mode=chat_mode,
                title=text[:TITLE_LENGTH] if role == MessageRole.USER else "New Chat",
                created_at=now,
                updated_at=now,
            )
            self._conversations.insert(0, conversation)
            logger.info("guest_conversation_created", conversation_id=str(conversation.id))

        message = Message(
            conversation_id=conversation.id,
            role=role,
            text=text,
            chat_mode=chat_mode,
            created_at=now,
        )
        self._messages.append(message)
        conversation.message_count = len(self.get_messages(conversation.id))
        conversation.updated_at = now
        if role == MessageRole.USER:
            conversation.title = text[:TITLE_LENGTH]
        self._save()

        logger.info(
            "guest_message_added",
            conversation_id=str(conversation.id),
            message_role=role.value,
            guest_message_count=len(self._messages),
        )
        return message

    def delete_conversation(self, conversation_id: UUID) -> bool:
        before = len(self._conversations)
        self._conversations = [c for c in self._conversations if c.id != conversation_id]
        if len(self._conversations) == before:
            return False
        self._messages = [m for m in self._messages if m.conversation_id != conversation_id]
        self._save()
        logger.info("guest_conversation_deleted", conversation_id=str(conversation_id))
        return True

    def clear(self) -> None:
        self._conversations, self._messages = [], []
        try:
            self.storage.remove(GUEST_CONVERSATIONS_KEY)
            self.storage.remove(GUEST_MESSAGES_KEY)
        except OSError as e:
            logger.warning("guest_data_clear_failed", error=str(e))
        logger.info("guest_data_cleared")
