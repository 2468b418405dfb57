"""HTTP client for the streaming completion endpoint."""

from typing import Any, AsyncIterator, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger()

STREAM_PATH = "/chat/stream"


class CompletionRequestError(Exception):
    """Raised when the completion endpoint does not return a usable stream."""


class StreamingCompletionClient:
    """Posts a chat request and yields the response body as decoded text.

    The caller cancels the request by cancelling the task consuming
    ``stream``; httpx closes the connection when the context unwinds.
    """

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=None)
        self._owns_client = http_client is None
        self.user_id = user_id

    async def stream(self, payload: Dict[str, Any]) -> AsyncIterator[str]:
        headers = {"Accept": "text/event-stream"}
        if self.user_id:
            headers["X-User-Id"] = self.user_id
        try:
            async with self._client.stream("POST", STREAM_PATH, json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    logger.error("completion_request_rejected", status_code=response.status_code)
                    raise CompletionRequestError(
                        f"Completion endpoint returned {response.status_code}"
                    )
                async for text in response.aiter_text():
                    yield text
        except httpx.HTTPError as e:
            logger.error("completion_transport_error", error=str(e))
            raise CompletionRequestError(str(e)) from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
