"""
FastAPI Application Module

Conversation store and chat streaming API for the Voyagr travel assistant.

Key Features:
- Conversation CRUD with a per-user cap of five conversations
- Message persistence and AI-generated conversation titles
- Streaming chat replies as ``data: <json>`` frames
- Rate limiting, structured logging, Prometheus metrics and OpenTelemetry

The signed-in user is identified by the ``X-User-Id`` header set by the
authentication layer in front of this service.
"""

import re
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from structlog import get_logger

from ..config import get_settings
from ..domain.events import ContentEvent, DoneEvent, ErrorEvent, encode_event
from ..domain.models import ChatMode, Conversation, Message, MessageRole
from ..log_config import configure_logging
from ..repositories.base import ConversationNotFoundError
from ..repositories.memory import InMemoryRepository
from ..services.llm import LLMService
from .rate_limiter import RateLimiter, rate_limit_middleware

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests by endpoint", ["path"], registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total errors by endpoint", ["path"], registry=CUSTOM_REGISTRY)
PROCESSING_TIME = Counter(
    "processing_time_seconds", "Total processing time by endpoint", ["path"], registry=CUSTOM_REGISTRY
)
STREAMED_REPLIES = Counter("streamed_replies_total", "Chat replies streamed by outcome", ["outcome"], registry=CUSTOM_REGISTRY)

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

settings = get_settings()
configure_logging(settings.log_level, settings.json_logs)
logger = get_logger()


class ConversationCreate(BaseModel):
    destination: str = ""
    chat_mode: ChatMode = ChatMode.ASK
    trip_id: Optional[str] = None


class ConversationUpdate(BaseModel):
    chat_mode: Optional[ChatMode] = None
    title: Optional[str] = None


class TitleMessage(BaseModel):
    role: MessageRole
    text: str


class TitleRequest(BaseModel):
    messages: List[TitleMessage] = Field(default_factory=list)


class PriorMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: MessageRole
    text: str = ""
    chat_mode: ChatMode = Field(ChatMode.ASK, alias="chatMode")


class ChatStreamRequest(BaseModel):
    """Body of a streaming chat request."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[UUID] = Field(None, alias="sessionId")
    destination_context: Dict[str, Any] = Field(default_factory=dict, alias="destinationContext")
    prior_messages: List[PriorMessage] = Field(default_factory=list, alias="priorMessages")
    mode: ChatMode = ChatMode.ASK
    message_text: str = Field(alias="messageText", min_length=1)


# Core service instances
repository = InMemoryRepository(max_conversations=settings.max_conversations)
llm_service = LLMService(api_key=settings.gemini_api_key, model_name=settings.gemini_model)
rate_limiter = RateLimiter(rate_limit=settings.rate_limit, time_window=settings.rate_window)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and resource management"""
    await rate_limiter.start()
    logger.info("application_startup_complete")

    yield

    await rate_limiter.stop()
    logger.info("application_shutdown_complete")


def get_repository() -> InMemoryRepository:
    """Returns the conversation storage instance"""
    return repository


def get_llm_service() -> LLMService:
    """Returns the language model service"""
    return llm_service


def get_rate_limiter() -> RateLimiter:
    """Returns the rate limiting service"""
    return rate_limiter


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Returns the signed-in user or rejects the request"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


def get_optional_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_id or None


app = FastAPI(
    title="Voyagr Chat API",
    description="Conversation store and streaming travel chat",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests and enforces rate limits"""
    path = request.url.path
    logger.info("request_started", path=path, method=request.method)
    REQUESTS.labels(path=path).inc()
    started = time.perf_counter()
    try:
        limited = await rate_limit_middleware(request, get_rate_limiter())
        if limited is not None:
            return limited
        response = await call_next(request)
        if response.status_code >= 500:
            ERRORS.labels(path=path).inc()
        return response
    except Exception as e:
        ERRORS.labels(path=path).inc()
        logger.error("request_failed", path=path, error=str(e))
        raise
    finally:
        PROCESSING_TIME.labels(path=path).inc(time.perf_counter() - started)


async def _owned_conversation(
    conversation_id: UUID, user_id: str, repository: InMemoryRepository
) -> Conversation:
    conversation = await repository.get_conversation(conversation_id)
    if conversation is None or conversation.user_id != user_id:
        logger.warning("conversation_not_found", conversation_id=str(conversation_id))
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@app.get("/conversations")
async def list_conversations(
    user_id: str = Depends(get_user_id),
    repository: InMemoryRepository = Depends(get_repository),
) -> Dict[str, List[Conversation]]:
    """Lists the user's conversations, most recent first"""
    try:
        return {"conversations": await repository.list_conversations(user_id)}
    except Exception as e:
        logger.error("list_conversations_error", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to fetch conversations")


@app.post("/conversations", status_code=201)
async def create_conversation(
    body: ConversationCreate,
    user_id: str = Depends(get_user_id),
    repository: InMemoryRepository = Depends(get_repository),
) -> Dict[str, Conversation]:
    """Starts a new conversation about a destination"""
    destination = body.destination.strip()
    if not destination:
        raise HTTPException(status_code=400, detail="Destination is required")

    # Placeholder trip ids such as 'draft' are dropped
    trip_id = UUID(body.trip_id) if body.trip_id and UUID_PATTERN.match(body.trip_id) else None
    try:
        conversation = await repository.create_conversation(user_id, destination, body.chat_mode, trip_id)
        return {"conversation": conversation}
    except Exception as e:
        logger.error("create_conversation_error", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to create conversation")


@app.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: UUID,
    user_id: str = Depends(get_user_id),
    repository: InMemoryRepository = Depends(get_repository),
) -> Dict[str, Any]:
    """Retrieves a conversation with its messages"""
    conversation = await _owned_conversation(conversation_id, user_id, repository)
    try:
        messages = await repository.get_messages(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": conversation, "messages": messages}


@app.patch("/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: UUID,
    body: ConversationUpdate,
    user_id: str = Depends(get_user_id),
    repository: InMemoryRepository = Depends(get_repository),
) -> Dict[str, Conversation]:
    """Updates a conversation's mode and/or title"""
    await _owned_conversation(conversation_id, user_id, repository)
    if body.chat_mode is not None:
        await repository.update_mode(conversation_id, body.chat_mode)
    if body.title is not None:
        await repository.update_title(conversation_id, body.title)
    return {"conversation": await _owned_conversation(conversation_id, user_id, repository)}


@app.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: UUID,
    user_id: str = Depends(get_user_id),
    repository: InMemoryRepository = Depends(get_repository),
) -> Dict[str, bool]:
    """Deletes a conversation and its messages"""
    await _owned_conversation(conversation_id, user_id, repository)
    await repository.delete_conversation(conversation_id)
    return {"success": True}


@app.post("/conversations/{conversation_id}/messages", status_code=201)
async def create_message(
    conversation_id: UUID,
    message: Message,
    user_id: str = Depends(get_user_id),
    repository: InMemoryRepository = Depends(get_repository),
) -> Dict[str, Message]:
    """Appends a message to a conversation"""
    await _owned_conversation(conversation_id, user_id, repository)
    message.conversation_id = conversation_id
    try:
        return {"message": await repository.add_message(message)}
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except Exception as e:
        logger.error("create_message_error", conversation_id=str(conversation_id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to save message")


@app.post("/conversations/{conversation_id}/generate-title")
async def generate_title(
    conversation_id: UUID,
    body: TitleRequest,
    user_id: str = Depends(get_user_id),
    repository: InMemoryRepository = Depends(get_repository),
    llm_service: LLMService = Depends(get_llm_service),
) -> Dict[str, str]:
    """Generates a short AI title from the opening messages"""
    if not body.messages:
        raise HTTPException(status_code=400, detail="Messages are required")
    await _owned_conversation(conversation_id, user_id, repository)

    messages = [Message(role=m.role, text=m.text) for m in body.messages]
    try:
        title = await llm_service.generate_title(messages)
    except Exception as e:
        logger.error("generate_title_error", conversation_id=str(conversation_id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to generate title")

    if not await repository.update_title(conversation_id, title):
        logger.warning("title_not_saved", conversation_id=str(conversation_id))
    return {"title": title}


async def run_reply_stream(llm_service: LLMService, body: ChatStreamRequest) -> AsyncIterator[str]:
    """Yields the reply as content frames followed by a done or error frame."""
    history = [Message(role=m.role, text=m.text, chat_mode=m.chat_mode) for m in body.prior_messages]
    destination = body.destination_context.get("destination")
    try:
        async for text in llm_service.stream_reply(body.message_text, history, body.mode, destination):
            yield encode_event(ContentEvent(content=text))
    except Exception as e:
        logger.error("reply_stream_error", session_id=str(body.session_id), error=str(e))
        STREAMED_REPLIES.labels(outcome="error").inc()
        yield encode_event(ErrorEvent(error="Failed to generate a reply"))
        return
    STREAMED_REPLIES.labels(outcome="done").inc()
    yield encode_event(DoneEvent(citations=[]))


@app.post("/chat/stream")
async def chat_stream(
    body: ChatStreamRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    llm_service: LLMService = Depends(get_llm_service),
) -> StreamingResponse:
    """Streams a chat reply; guests may call this without signing in"""
    logger.info(
        "chat_stream_started",
        session_id=str(body.session_id),
        mode=body.mode.value,
        guest=user_id is None,
    )
    return StreamingResponse(run_reply_stream(llm_service, body), media_type="text/event-stream")


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
