"""Wiring for a controller that talks to the Voyagr chat API over HTTP."""

from typing import Optional

import httpx

from ..config import Settings, get_settings
from ..repositories.guest import GuestStore, KeyValueStorage
from ..repositories.http import HttpRepository
from ..streaming.buffer import TickSource
from ..streaming.client import StreamingCompletionClient
from .session import ChatSessionController


def build_http_controller(
    user_id: Optional[str] = None,
    destination: Optional[str] = None,
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    guest_storage: Optional[KeyValueStorage] = None,
    tick_source: Optional[TickSource] = None,
) -> ChatSessionController:
    """Controller using the REST conversation store and streaming endpoint.

    Guests (``user_id`` None) still stream replies; their history goes to
    ``guest_storage``.
    """
    settings = settings or get_settings()
    client = http_client or httpx.AsyncClient(base_url=settings.api_base_url, timeout=None)
    repository = HttpRepository(client, user_id or "")
    completion = StreamingCompletionClient(settings.api_base_url, http_client=client, user_id=user_id)
    controller = ChatSessionController(
        repository=repository,
        completion_client=completion,
        guest_store=GuestStore(guest_storage, limit=settings.guest_message_limit),
        title_generator=repository,
        tick_source=tick_source,
        user_id=user_id,
        destination=destination,
    )

    def sync_identity(current: ChatSessionController) -> None:
        repository.user_id = current.user_id or ""
        completion.user_id = current.user_id

    controller.subscribe(sync_identity)
    return controller
