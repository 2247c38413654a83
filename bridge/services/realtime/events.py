"""Upstream realtime events, decoded once into tagged variants."""
import logging
from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ContentDelta(BaseModel):
    """A fragment of assistant text (or audio transcript)."""

    kind: Literal["content_delta"] = "content_delta"
    item_id: str
    delta: str
    response_id: Optional[str] = None


class ContentDone(BaseModel):
    """Assistant content for an item is complete."""

    kind: Literal["content_done"] = "content_done"
    item_id: str
    text: str
    response_id: Optional[str] = None


class AudioDelta(BaseModel):
    """A base64 chunk of assistant audio."""

    kind: Literal["audio_delta"] = "audio_delta"
    item_id: Optional[str] = None
    delta: str


class InputTranscript(BaseModel):
    """Transcript of user speech detected upstream."""

    kind: Literal["input_transcript"] = "input_transcript"
    item_id: Optional[str] = None
    transcript: str


class SpeechStarted(BaseModel):
    """Upstream voice activity detection heard the user start speaking."""

    kind: Literal["speech_started"] = "speech_started"
    item_id: Optional[str] = None


class ToolCallDelta(BaseModel):
    """A function-call argument fragment (or the announcement of a new call)."""

    kind: Literal["tool_call_delta"] = "tool_call_delta"
    call_id: str
    name: Optional[str] = None
    fragment: str = ""


class ToolCallDone(BaseModel):
    """A function call's arguments are complete."""

    kind: Literal["tool_call_done"] = "tool_call_done"
    call_id: str
    name: Optional[str] = None
    arguments: str = ""


class ResponseCreated(BaseModel):
    """The realtime service started a response cycle."""

    kind: Literal["response_created"] = "response_created"
    response_id: Optional[str] = None


class ResponseDone(BaseModel):
    """A response cycle finished."""

    kind: Literal["response_done"] = "response_done"
    response_id: Optional[str] = None
    status: Optional[str] = None
    has_function_calls: bool = False


class UpstreamErrorEvent(BaseModel):
    """An ``error`` event sent by the realtime service."""

    kind: Literal["upstream_error"] = "upstream_error"
    error: Dict[str, Any] = {}


RealtimeEvent = Union[
    ContentDelta,
    ContentDone,
    AudioDelta,
    InputTranscript,
    SpeechStarted,
    ToolCallDelta,
    ToolCallDone,
    ResponseCreated,
    ResponseDone,
    UpstreamErrorEvent,
]

TEXT_DELTA_TYPES = ("response.text.delta", "response.output_text.delta", "response.audio_transcript.delta")
TEXT_DONE_TYPES = ("response.text.done", "response.output_text.done", "response.audio_transcript.done")


def decode_event(raw: Dict[str, Any]) -> Optional[RealtimeEvent]:
    """
    Decode a raw upstream frame.

    Args:
        raw: Parsed JSON frame from the realtime service

    Returns:
        A tagged event, or None for frames the bridge does not act on
    """
    event_type = raw.get("type")

    if event_type in TEXT_DELTA_TYPES:
        return ContentDelta(
            item_id=raw.get("item_id") or "",
            delta=raw.get("delta") or "",
            response_id=raw.get("response_id"),
        )

    if event_type in TEXT_DONE_TYPES:
        text = raw.get("text")
        if text is None:
            text = raw.get("transcript") or ""
        return ContentDone(item_id=raw.get("item_id") or "", text=text, response_id=raw.get("response_id"))

    if event_type == "response.audio.delta":
        return AudioDelta(item_id=raw.get("item_id"), delta=raw.get("delta") or "")

    if event_type == "conversation.item.input_audio_transcription.completed":
        return InputTranscript(item_id=raw.get("item_id"), transcript=raw.get("transcript") or "")

    if event_type == "input_audio_buffer.speech_started":
        return SpeechStarted(item_id=raw.get("item_id"))

    if event_type == "response.output_item.added":
        item = raw.get("item") or {}
        if item.get("type") == "function_call" and item.get("call_id"):
            return ToolCallDelta(call_id=item["call_id"], name=item.get("name"))
        return None

    if event_type == "response.function_call_arguments.delta":
        if not raw.get("call_id"):
            return None
        return ToolCallDelta(call_id=raw["call_id"], name=raw.get("name"), fragment=raw.get("delta") or "")

    if event_type == "response.function_call_arguments.done":
        if not raw.get("call_id"):
            return None
        return ToolCallDone(call_id=raw["call_id"], name=raw.get("name"), arguments=raw.get("arguments") or "")

    if event_type == "response.created":
        return ResponseCreated(response_id=(raw.get("response") or {}).get("id"))

    if event_type == "response.done":
        response = raw.get("response") or {}
        output = response.get("output") or []
        return ResponseDone(
            response_id=response.get("id"),
            status=response.get("status"),
            has_function_calls=any(item.get("type") == "function_call" for item in output),
        )

    if event_type == "error":
        return UpstreamErrorEvent(error=raw.get("error") or {})

    if event_type:
        logger.debug(f"[BRIDGE] Ignoring upstream event: {event_type}")
    return None
