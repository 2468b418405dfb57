"""Per-client rate limiting for the chat API using a sliding window."""

import asyncio
import time
from typing import Callable, Dict, List, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from structlog import get_logger

logger = get_logger()


class RateLimitExceeded(Exception):
    """Raised when a client has used up its requests for the window."""

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RateLimiter:
    """Tracks request timestamps per key and rejects keys over the limit."""

    def __init__(
        self,
        rate_limit: int = 30,
        time_window: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_limit = rate_limit
        self.time_window = time_window  # in seconds
        self.requests: Dict[str, List[float]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info("rate_limiter_initialized", rate_limit=rate_limit, time_window=time_window)

    async def start(self) -> None:
        """Start the periodic cleanup of stale keys."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def reset(self) -> None:
        async with self._lock:
            self.requests.clear()

    def _prune(self, key: str, now: float) -> List[float]:
        cutoff = now - self.time_window
        timestamps = [ts for ts in self.requests.get(key, []) if ts > cutoff]
        self.requests[key] = timestamps
        return timestamps

    async def _periodic_cleanup(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.time_window)
                async with self._lock:
                    now = self._clock()
                    for key in list(self.requests.keys()):
                        if not self._prune(key, now):
                            del self.requests[key]
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("rate_limiter_cleanup_error", error=str(e))

    async def check_rate_limit(self, key: str) -> int:
        """Record a request for ``key`` and return how many remain in the window."""
        async with self._lock:
            now = self._clock()
            timestamps = self._prune(key, now)

            if len(timestamps) >= self.rate_limit:
                retry_after = max(0.0, timestamps[0] + self.time_window - now)
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(timestamps),
                    rate_limit=self.rate_limit,
                )
                raise RateLimitExceeded(
                    f"Rate limit of {self.rate_limit} requests per {self.time_window} seconds exceeded",
                    retry_after=retry_after,
                )

            timestamps.append(now)
            return self.rate_limit - len(timestamps)

    async def get_remaining_requests(self, key: str) -> int:
        async with self._lock:
            if key not in self.requests:
                return self.rate_limit
            return max(0, self.rate_limit - len(self._prune(key, self._clock())))


def client_key(request: Request) -> str:
    client_ip = request.client.host if request.client else "unknown"
    return f"{client_ip}:{request.url.path}"


async def rate_limit_middleware(request: Request, rate_limiter: Optional[RateLimiter] = None) -> Optional[JSONResponse]:
    """Return a 429 response when the client is over its limit, else None."""
    if rate_limiter is None:
        return None
    try:
        await rate_limiter.check_rate_limit(client_key(request))
    except RateLimitExceeded as e:
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests. Please try again later."},
            headers={"Retry-After": str(int(e.retry_after) + 1)},
        )
    return None
