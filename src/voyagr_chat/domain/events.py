"""Stream events emitted by the chat completion endpoint.

Every frame on the wire is ``data: <json>`` followed by a blank line. The
JSON object carries a ``type`` discriminator; known types decode into the
models below and anything else becomes an ``UnknownEvent``.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

FRAME_PREFIX = "data: "
FRAME_SEPARATOR = "\n\n"


class MalformedFrameError(ValueError):
    """Raised when a frame payload cannot be decoded into an event."""


class StreamEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ContentEvent(StreamEvent):
    type: Literal["content"] = "content"
    content: str


class CardsEvent(StreamEvent):
    type: Literal["cards"] = "cards"
    cards: List[Dict[str, Any]]


class VideosEvent(StreamEvent):
    type: Literal["videos"] = "videos"
    videos: List[Dict[str, Any]]


class VideoAnalysisEvent(StreamEvent):
    type: Literal["videoAnalysis"] = "videoAnalysis"
    video_analysis: Dict[str, Any] = Field(alias="videoAnalysis")


class SmartVideoResultEvent(StreamEvent):
    type: Literal["smartVideoResult"] = "smartVideoResult"
    smart_video_result: Dict[str, Any] = Field(alias="smartVideoResult")


class ItineraryEvent(StreamEvent):
    type: Literal["itinerary"] = "itinerary"
    itinerary: Dict[str, Any]


class ToolCallsEvent(StreamEvent):
    type: Literal["toolCalls"] = "toolCalls"
    tool_calls: List[Dict[str, Any]] = Field(alias="toolCalls")


class DoneEvent(StreamEvent):
    type: Literal["done"] = "done"
    citations: Optional[List[Any]] = None


class ErrorEvent(StreamEvent):
    type: Literal["error"] = "error"
    error: str = "Unknown error"


class UnknownEvent(StreamEvent):
    """A well-formed frame with a ``type`` this client does not know."""

    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


KnownEvent = Annotated[
    Union[
        ContentEvent,
        CardsEvent,
        VideosEvent,
        VideoAnalysisEvent,
        SmartVideoResultEvent,
        ItineraryEvent,
        ToolCallsEvent,
        DoneEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

_known_adapter = TypeAdapter(KnownEvent)

KNOWN_TYPES = frozenset(
    [
        "content",
        "cards",
        "videos",
        "videoAnalysis",
        "smartVideoResult",
        "itinerary",
        "toolCalls",
        "done",
        "error",
    ]
)

# Events whose payload is attached to the assistant message as-is.
ATTACHMENT_FIELDS = {
    "cards": "cards",
    "videos": "videos",
    "videoAnalysis": "video_analysis",
    "smartVideoResult": "smart_video_result",
    "itinerary": "itinerary",
    "toolCalls": "tool_calls",
}


def decode_event(payload: str) -> StreamEvent:
    """Decode the JSON payload of one frame (without the ``data: `` prefix)."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedFrameError(f"Invalid JSON in frame: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MalformedFrameError("Frame is missing a string 'type'")

    event_type = data["type"]
    if event_type not in KNOWN_TYPES:
        payload_fields = {k: v for k, v in data.items() if k != "type"}
        return UnknownEvent(type=event_type, payload=payload_fields)

    try:
        return _known_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedFrameError(f"Invalid '{event_type}' frame: {e}") from e


def encode_event(event: StreamEvent) -> str:
    """Render an event as a single wire frame."""
    return f"{FRAME_PREFIX}{event.model_dump_json(by_alias=True)}{FRAME_SEPARATOR}"
