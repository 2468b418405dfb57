"""Application settings."""

import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel

from .domain.models import MAX_CONVERSATIONS
from .repositories.guest import DEFAULT_GUEST_MESSAGE_LIMIT


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Configuration read from the environment."""

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    api_base_url: str = "http://localhost:8000"

    guest_message_limit: int = DEFAULT_GUEST_MESSAGE_LIMIT
    max_conversations: int = MAX_CONVERSATIONS

    # Requests per client and path within the window (seconds)
    rate_limit: int = 30
    rate_window: int = 60

    log_level: str = "INFO"
    json_logs: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            gemini_model=os.getenv("VOYAGR_GEMINI_MODEL", "gemini-1.5-flash"),
            api_base_url=os.getenv("VOYAGR_API_BASE_URL", "http://localhost:8000"),
            guest_message_limit=int(os.getenv("VOYAGR_GUEST_MESSAGE_LIMIT", DEFAULT_GUEST_MESSAGE_LIMIT)),
            max_conversations=int(os.getenv("VOYAGR_MAX_CONVERSATIONS", MAX_CONVERSATIONS)),
            rate_limit=int(os.getenv("VOYAGR_RATE_LIMIT", 30)),
            rate_window=int(os.getenv("VOYAGR_RATE_WINDOW", 60)),
            log_level=os.getenv("VOYAGR_LOG_LEVEL", "INFO"),
            json_logs=_env_bool("VOYAGR_JSON_LOGS", False),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
