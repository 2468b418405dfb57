"""
Chat Session Controller

Owns one conversation at a time: its message list, the active chat mode,
the single in-flight completion request and the paced release of streamed
text into the newest assistant message.

Request lifecycle:
- ``send_message`` appends the user message and an empty assistant
  placeholder before anything else, resolves the session, persists the
  user message, then consumes the completion stream frame by frame.
- ``content`` frames go through the token-release buffer; structured frames
  (cards, videos, itinerary, ...) are attached to the placeholder at once.
- ``done`` flushes the buffer, attaches citations and persists the reply.
  ``error`` frames and transport failures replace the text with an apology.
- ``cancel`` aborts the request, flushes the buffer and leaves a "stopped"
  placeholder if nothing had arrived yet.

Guests chat through local storage with a message quota; signed-in users
persist through the conversation store. The path is chosen once per send.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple, Union
from uuid import UUID

import structlog

from ..domain.events import (
    ATTACHMENT_FIELDS,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
)
from ..domain.models import ChatMode, Conversation, GuestConversation, Message, MessageRole
from ..repositories.base import Repository
from ..repositories.guest import GuestStore
from ..streaming.buffer import SLICE_SIZE, TICK_INTERVAL, AsyncioTickSource, TickSource, TokenReleaseBuffer
from ..streaming.frames import FrameDecoder

logger = structlog.get_logger()

APOLOGY_TEXT = "Sorry, I encountered an error. Please try again."
STOPPED_TEXT = "Response stopped."

# Guest history is grouped by destination; chats without one share this bucket.
UNSPECIFIED_DESTINATION = "Anywhere"

Listener = Callable[["ChatSessionController"], None]


class RequestPhase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"


@dataclass
class _ActiveRequest:
    user_message: Message
    message: Message
    is_guest: bool
    session_id: Optional[UUID] = None
    task: Optional[asyncio.Task] = None
    finalized: bool = False
    cancelled: bool = False


class ChatSessionController:
    """State machine between user input, the completion stream and the message list.

    Collaborators:
    - ``repository``: conversation store for signed-in users.
    - ``completion_client``: object with ``stream(payload)`` returning an
      async iterator of response text chunks.
    - ``guest_store``: local storage used while ``user_id`` is None.
    - ``title_generator``: optional object with
      ``generate_title(conversation_id, messages)`` returning a title or None.
    - ``tick_source``: drives the token-release buffer.
    """

    def __init__(
        self,
        repository: Repository,
        completion_client: Any,
        guest_store: Optional[GuestStore] = None,
        title_generator: Any = None,
        tick_source: Optional[TickSource] = None,
        user_id: Optional[str] = None,
        destination: Optional[str] = None,
        mode: ChatMode = ChatMode.ASK,
        tick_interval: float = TICK_INTERVAL,
        slice_size: int = SLICE_SIZE,
    ) -> None:
        self.repository = repository
        self.guest_store = guest_store or GuestStore()
        self._completion = completion_client
        self._title_generator = title_generator

        self.user_id = user_id
        self.destination = destination
        self.mode = ChatMode(mode)
        self.session_id: Optional[UUID] = None
        self.title: Optional[str] = None
        self.messages: List[Message] = []
        self.phase = RequestPhase.IDLE
        self.show_sign_in_prompt = False

        self._buffer = TokenReleaseBuffer(
            tick_source or AsyncioTickSource(),
            self._release_text,
            interval=tick_interval,
            slice_size=slice_size,
        )
        self._request: Optional[_ActiveRequest] = None
        self._listeners: List[Listener] = []
        self._background: Set[asyncio.Task] = set()

        # Bumped whenever the current session is replaced from outside a send
        self._session_epoch = 0
        self._pending_session: Optional[Tuple[int, str, asyncio.Task]] = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def is_loading(self) -> bool:
        return self.phase is not RequestPhase.IDLE

    # Observers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(controller)`` after every state change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error("chat_listener_error", error=str(e))

    # Identity

    def sign_in(self, user_id: str) -> None:
        self.user_id = user_id
        self.show_sign_in_prompt = False
        logger.info("chat_user_signed_in", user_id=user_id)
        self._notify()

    def dismiss_sign_in_prompt(self) -> None:
        self.show_sign_in_prompt = False
        self._notify()

    # Sessions

    async def select_mode(self, mode: Union[ChatMode, str]) -> None:
        """Switch mode for messages sent from now on."""
        self.mode = ChatMode(mode)
        self._notify()
        if self.session_id is None or self.is_guest:
            return
        try:
            await self.repository.update_mode(self.session_id, self.mode)
        except Exception as e:
            logger.error("update_mode_error", conversation_id=str(self.session_id), error=str(e))

    async def _create_session(self, destination: str) -> Optional[Conversation]:
        try:
            conversation = await self.repository.create_conversation(self.user_id, destination, self.mode)
        except Exception as e:
            logger.error("create_conversation_error", destination=destination, error=str(e))
            return None
        self._adopt(conversation)
        return conversation

    async def _ensure_session(self, destination: str) -> None:
        """Create the session for the first send, sharing one creation between sends.

        A send cancelled while the conversation is being created leaves the
        creation running; the next send waits for it instead of creating a
        second conversation.
        """
        pending = self._pending_session
        if pending is None or pending[0] != self._session_epoch or pending[1] != destination:
            task = self._spawn(self._create_lazy_session(self._session_epoch, destination))
            pending = (self._session_epoch, destination, task)
            self._pending_session = pending
        try:
            await asyncio.shield(pending[2])
        finally:
            if self._pending_session is pending and pending[2].done():
                self._pending_session = None

    async def _create_lazy_session(self, epoch: int, destination: str) -> None:
        try:
            conversation = await self.repository.create_conversation(self.user_id, destination, self.mode)
        except Exception as e:
            logger.error("create_conversation_error", destination=destination, error=str(e))
            return

        if epoch == self._session_epoch and self.session_id is None and self.destination == destination:
            self._adopt(conversation)
            return
        # The session moved on while this one was being created
        logger.info("lazy_session_discarded", conversation_id=str(conversation.id))
        try:
            await self.repository.delete_conversation(conversation.id)
        except Exception as e:
            logger.error("delete_conversation_error", conversation_id=str(conversation.id), error=str(e))

    def _adopt(self, conversation: Union[Conversation, GuestConversation]) -> None:
        self.session_id = conversation.id
        self.destination = conversation.destination
        self.title = conversation.title
        self.mode = ChatMode(conversation.chat_mode)

    def _clear_session(self) -> None:
        self.session_id = None
        self.title = None
        self.messages = []

    async def start_new_session(self, destination: str) -> Optional[UUID]:
        """Create a new conversation for ``destination`` and clear the messages.

        Guests cannot persist sessions, so this is a no-op without a user.
        """
        if not destination or not destination.strip():
            raise ValueError("destination must be a non-empty label")
        if self.is_guest:
            logger.info("new_session_skipped_for_guest", destination=destination)
            return None
        self._abort_in_flight()

        conversation = await self._create_session(destination.strip())
        if conversation is None:
            return None
        self.messages = []
        self._notify()
        return conversation.id

    async def switch_destination(self, destination: str) -> Optional[UUID]:
        """Resume the conversation for ``destination`` or start a new one."""
        if (
            self.session_id is not None
            and self.destination
            and self.destination.lower() == destination.lower()
        ):
            return self.session_id
        self._abort_in_flight()
        self.destination = destination

        if self.is_guest:
            conversation = self.guest_store.find_by_destination(destination)
            if conversation is None:
                self._clear_session()
            else:
                self._adopt(conversation)
                self.messages = self.guest_store.get_messages(conversation.id)
            self._notify()
            return self.session_id

        try:
            existing = await self.repository.find_by_destination(self.user_id, destination)
        except Exception as e:
            logger.error("find_conversation_error", destination=destination, error=str(e))
            existing = None
        if existing is not None:
            await self.select_conversation(existing.id)
            return self.session_id
        return await self.start_new_session(destination)

    async def select_conversation(self, conversation_id: UUID) -> bool:
        """Load a stored conversation and its messages as the current session."""
        self._abort_in_flight()
        try:
            conversation = await self.repository.get_conversation(conversation_id)
            messages = await self.repository.get_messages(conversation_id) if conversation else []
        except Exception as e:
            logger.error("load_conversation_error", conversation_id=str(conversation_id), error=str(e))
            conversation, messages = None, []

        if conversation is None:
            self._clear_session()
            self._notify()
            return False
        self._adopt(conversation)
        self.messages = list(messages)
        self._notify()
        return True

    async def list_conversations(self) -> List[Union[Conversation, GuestConversation]]:
        if self.is_guest:
            return self.guest_store.list_conversations()
        try:
            return await self.repository.list_conversations(self.user_id)
        except Exception as e:
            logger.error("list_conversations_error", error=str(e))
            return []

    async def delete_conversation(self, conversation_id: UUID) -> bool:
        if self.is_guest:
            deleted = self.guest_store.delete_conversation(conversation_id)
        else:
            try:
                deleted = await self.repository.delete_conversation(conversation_id)
            except Exception as e:
                logger.error("delete_conversation_error", conversation_id=str(conversation_id), error=str(e))
                deleted = False
        if deleted and conversation_id == self.session_id:
            self._abort_in_flight()
            self._clear_session()
            self._notify()
        return deleted

    # Sending

    async def send_message(self, text: str) -> bool:
        """Send ``text`` and consume the streamed reply.

        Returns False when the send is refused: empty text, a request already
        in flight, or an exhausted guest quota.
        """
        text = (text or "").strip()
        if not text:
            return False
        if self._request is not None:
            logger.warning("send_rejected_request_in_flight")
            return False

        is_guest = self.is_guest
        if is_guest and self.guest_store.limit_reached:
            logger.info("send_rejected_guest_quota", limit=self.guest_store.limit)
            self.show_sign_in_prompt = True
            self._notify()
            return False

        mode = self.mode
        request = _ActiveRequest(
            user_message=Message(role=MessageRole.USER, text=text, chat_mode=mode),
            message=Message(role=MessageRole.ASSISTANT, text="", chat_mode=mode),
            is_guest=is_guest,
        )
        self._request = request
        self.phase = RequestPhase.CONNECTING
        prior_messages = list(self.messages)
        self.messages.extend([request.user_message, request.message])
        self._notify()

        try:
            if not is_guest:
                if self.session_id is None and self.destination:
                    await self._ensure_session(self.destination)
                    if request.cancelled:
                        return True
                request.session_id = self.session_id
                request.user_message.conversation_id = self.session_id
                request.message.conversation_id = self.session_id

            await self._persist(request.user_message, request)
            if request.cancelled:
                return True

            payload = self._build_payload(request, prior_messages, mode)
            request.task = asyncio.create_task(self._stream_reply(request, payload))
            try:
                await request.task
            except asyncio.CancelledError:
                if not request.cancelled:
                    raise
                logger.info("chat_request_cancelled", message_id=str(request.message.id))
            return True
        finally:
            if self._request is request:
                self._flush_buffer(request)
                self._request = None
                self.phase = RequestPhase.IDLE
                self._notify()

    def _build_payload(self, request: _ActiveRequest, prior_messages: List[Message], mode: ChatMode) -> Dict[str, Any]:
        return {
            "sessionId": str(request.session_id) if request.session_id else None,
            "destinationContext": {"destination": self.destination},
            "priorMessages": [
                {"role": MessageRole(m.role).value, "text": m.text, "chatMode": ChatMode(m.chat_mode).value}
                for m in prior_messages
            ],
            "mode": mode.value,
            "messageText": request.user_message.text,
        }

    async def _stream_reply(self, request: _ActiveRequest, payload: Dict[str, Any]) -> None:
        decoder = FrameDecoder()
        stream: AsyncIterator[str] = self._completion.stream(payload)
        try:
            async for chunk in stream:
                if self.phase is RequestPhase.CONNECTING:
                    self.phase = RequestPhase.STREAMING
                    self._notify()
                for event in decoder.feed(chunk):
                    await self._apply_event(request, event)
                if request.finalized:
                    break

            if not request.finalized:
                for event in decoder.close():
                    await self._apply_event(request, event)
            if not request.finalized:
                logger.warning("stream_ended_without_done", message_id=str(request.message.id))
                await self._finalize(request, citations=None)
        except Exception as e:
            logger.error("chat_request_failed", error=str(e), error_type=type(e).__name__)
            self._fail(request)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _apply_event(self, request: _ActiveRequest, event: StreamEvent) -> None:
        if request.finalized:
            logger.warning("stream_event_after_finalization", event_type=event.type)
            return

        message = request.message
        if isinstance(event, ContentEvent):
            self._buffer.push(event.content)
            self._buffer.ensure_started(str(message.id))
        elif event.type in ATTACHMENT_FIELDS:
            field = ATTACHMENT_FIELDS[event.type]
            setattr(message, field, getattr(event, field))
            self._notify()
        elif isinstance(event, DoneEvent):
            await self._finalize(request, event.citations)
        elif isinstance(event, ErrorEvent):
            logger.error("stream_error_frame", error=event.error, message_id=str(message.id))
            self._fail(request)
        else:
            logger.debug("stream_event_ignored", event_type=event.type)

    async def _finalize(self, request: _ActiveRequest, citations: Optional[List[Any]]) -> None:
        self._flush_buffer(request)
        request.finalized = True
        request.message.citations = citations
        self._notify()

        await self._persist(request.message, request)
        if request.is_guest:
            self.show_sign_in_prompt = True
            self._notify()
        elif self._is_first_exchange(request):
            self._spawn(self._generate_title(request))

    def _fail(self, request: _ActiveRequest) -> None:
        self._flush_buffer(request)
        request.finalized = True
        request.message.text = APOLOGY_TEXT
        self._notify()

    def _is_first_exchange(self, request: _ActiveRequest) -> bool:
        if request.session_id is None or self._title_generator is None:
            return False
        in_session = [m for m in self.messages if m.conversation_id == request.session_id]
        return len(in_session) <= 2

    async def _persist(self, message: Message, request: _ActiveRequest) -> None:
        try:
            if request.is_guest:
                self.guest_store.append_message(
                    self.destination or UNSPECIFIED_DESTINATION,
                    MessageRole(message.role),
                    message.text,
                    ChatMode(message.chat_mode),
                )
            elif request.session_id is not None:
                await self.repository.add_message(message.model_copy(deep=True))
        except Exception as e:
            logger.error(
                "message_persist_error",
                conversation_id=str(request.session_id),
                message_role=MessageRole(message.role).value,
                error=str(e),
            )

    async def _generate_title(self, request: _ActiveRequest) -> None:
        session_id = request.session_id
        try:
            title = await self._title_generator.generate_title(
                session_id, [request.user_message, request.message]
            )
            if not title:
                return
            await self.repository.update_title(session_id, title)
        except Exception as e:
            logger.error("generate_title_error", conversation_id=str(session_id), error=str(e))
            return
        if self.session_id == session_id:
            self.title = title
            self._notify()

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # Token release

    def _release_text(self, message_id: str, chunk: str) -> None:
        for message in reversed(self.messages):
            if str(message.id) == message_id:
                message.text += chunk
                self._notify()
                return
        logger.warning("released_text_without_message", message_id=message_id)

    def _flush_buffer(self, request: _ActiveRequest) -> None:
        if self._buffer.message_id in (None, str(request.message.id)):
            self._buffer.flush()

    # Cancellation

    def cancel(self) -> bool:
        """Abort the in-flight request, keeping whatever text already arrived."""
        request = self._request
        if request is None or request.finalized:
            return False
        request.cancelled = True
        if request.task is not None:
            request.task.cancel()
        self._flush_buffer(request)
        request.finalized = True
        if not request.message.text:
            request.message.text = STOPPED_TEXT
        self._request = None
        self.phase = RequestPhase.IDLE
        logger.info("chat_request_stopped", message_id=str(request.message.id))
        self._notify()
        return True

    def _abort_in_flight(self) -> None:
        self._session_epoch += 1
        if self._request is not None:
            self.cancel()

    async def aclose(self) -> None:
        """Cancel any request and wait for background session and title tasks."""
        self._abort_in_flight()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
