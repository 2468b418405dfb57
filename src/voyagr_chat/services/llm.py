"""LLM service for travel chat replies and conversation titles."""

from typing import Any, AsyncIterator, List, Optional, Sequence

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..domain.models import ChatMode, Message, MessageRole

logger = structlog.get_logger()

DEFAULT_MODEL = "gemini-1.5-flash"
DEFAULT_TITLE = "New Conversation"

# History turns included in a reply prompt
CONTEXT_WINDOW = 10

TITLE_SOURCE_MESSAGES = 3
TITLE_SNIPPET_LENGTH = 200

MODE_INSTRUCTIONS = {
    ChatMode.ASK: (
        "You are Voyagr, a friendly travel assistant. Answer briefly and concretely, "
        "naming specific places worth visiting."
    ),
    ChatMode.ITINERARY: (
        "You are Voyagr, a travel planner. Reply with a day-by-day itinerary: "
        "one heading per day, with morning, afternoon and evening suggestions."
    ),
}

TITLE_INSTRUCTIONS = """You generate short, descriptive titles for travel chat conversations.
Rules:
- Maximum 6 words
- Be specific and descriptive
- Use title case
- No quotes or punctuation at the end
- Focus on the destination and activity/intent

Examples:
- Tokyo Food Tour Planning
- Paris Hidden Gems
- Rome Family Trip Itinerary"""


def build_reply_prompt(
    message: str,
    history: Sequence[Message],
    mode: ChatMode = ChatMode.ASK,
    destination: Optional[str] = None,
) -> str:
    """Format the prompt for a chat reply in ``mode``."""
    lines = [MODE_INSTRUCTIONS[mode]]
    if destination:
        lines.append(f"The traveller is planning a trip to {destination}.")
    recent = list(history)[-CONTEXT_WINDOW:]
    if recent:
        lines.append("")
        lines.append("Conversation so far:")
        for msg in recent:
            if msg.text:
                lines.append(f"{MessageRole(msg.role).value}: {msg.text}")
    lines.append("")
    lines.append(f"user: {message}")
    lines.append("assistant:")
    return "\n".join(lines)


def build_title_prompt(messages: Sequence[Message]) -> str:
    snippet = "\n".join(
        f"{MessageRole(m.role).value}: {m.text[:TITLE_SNIPPET_LENGTH]}"
        for m in list(messages)[:TITLE_SOURCE_MESSAGES]
    )
    return f"{TITLE_INSTRUCTIONS}\n\nGenerate a title for this travel chat conversation:\n\n{snippet}"


def clean_title(raw: Optional[str]) -> str:
    title = (raw or "").strip().strip('"').strip("'").rstrip(".!").strip()
    return title or DEFAULT_TITLE


def response_text(response: Any) -> str:
    """Text of a Gemini response or chunk, or "" when it has no text part.

    The ``text`` accessor raises ValueError for blocked or finish-only
    candidates instead of returning an empty string.
    """
    try:
        return response.text or ""
    except ValueError as e:
        logger.debug("gemini_response_without_text", error=str(e))
        return ""


class LLMService:
    """Gemini-backed reply streaming and title generation."""

    def __init__(self, api_key: Optional[str] = None, model_name: str = DEFAULT_MODEL) -> None:
        if api_key:
            genai.configure(api_key=api_key)
        self.model_name = model_name
        self.model = genai.GenerativeModel(model_name)
        logger.info("llm_service_init", model=model_name, api_key_configured=bool(api_key))

    async def stream_reply(
        self,
        message: str,
        history: Sequence[Message],
        mode: ChatMode = ChatMode.ASK,
        destination: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Yield reply text as the model produces it."""
        prompt = build_reply_prompt(message, history, mode, destination)
        try:
            response = await self.model.generate_content_async(prompt, stream=True)
            async for chunk in response:
                text = response_text(chunk)
                if text:
                    yield text
        except exceptions.ResourceExhausted:
            logger.warning("gemini_quota_exhausted", model=self.model_name)
            raise
        except Exception as e:
            logger.error("reply_generation_error", error=str(e))
            raise

    async def generate_title(self, messages: List[Message]) -> str:
        """Summarise the opening of a conversation into a short title."""
        prompt = build_title_prompt(messages)
        response = await self.model.generate_content_async(
            prompt,
            generation_config=genai.types.GenerationConfig(max_output_tokens=20, temperature=0.7),
        )
        title = clean_title(response_text(response))
        logger.info("title_generated", title=title)
        return title
