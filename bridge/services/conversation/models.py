"""Conversation, turn and tool-call models."""
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class Channel(str, Enum):
    """Modality a connection or conversation uses."""

    VOICE = "voice"
    TEXT = "text"
    SMS = "sms"

    def __str__(self) -> str:
        return self.value


class ConversationState(str, Enum):
    """Conversation lifecycle states."""

    CREATED = "created"
    ACTIVE = "active"
    ENDING = "ending"
    FINALIZED = "finalized"  # terminal

    def __str__(self) -> str:
        return self.value


# Allowed lifecycle transitions; nothing skips a state
STATE_TRANSITIONS = {
    ConversationState.CREATED: ConversationState.ACTIVE,
    ConversationState.ACTIVE: ConversationState.ENDING,
    ConversationState.ENDING: ConversationState.FINALIZED,
}


class Role(str, Enum):
    """Turn author."""

    USER = "user"
    ASSISTANT = "assistant"

    def __str__(self) -> str:
        return self.value


class ToolCallStatus(str, Enum):
    """Tool call lifecycle."""

    PENDING = "pending"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class ToolCall(BaseModel):
    """A model-issued function call, assembled from streamed fragments."""

    call_id: str
    name: Optional[str] = None
    arguments: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Optional[str] = None

    def append_fragment(self, fragment: str) -> None:
        """Append an argument fragment in arrival order."""
        self.arguments += fragment

    @property
    def is_open(self) -> bool:
        """True while the call can still receive fragments."""
        return self.status == ToolCallStatus.PENDING


class Turn(BaseModel):
    """One role-tagged content unit of a transcript."""

    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    tool_calls: List[ToolCall] = []
    supervisor: bool = False
    complete: bool = True
    item_id: Optional[str] = None  # Upstream item id for streamed turns


def new_conversation_id() -> str:
    """Generate an opaque conversation identifier."""
    return f"conv_{uuid.uuid4().hex}"


class Conversation(BaseModel):
    """Authoritative record of a conversation."""

    id: str = Field(default_factory=new_conversation_id)
    channel: Channel
    transcript: List[Turn] = []
    state: ConversationState = ConversationState.CREATED
    started_at: datetime = Field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None
    history_window: int = 20

    @property
    def accepts_turns(self) -> bool:
        """True when new turns may still be appended."""
        return self.state in (ConversationState.CREATED, ConversationState.ACTIVE)

    @property
    def duration_ms(self) -> Optional[int]:
        """Elapsed time between start and end, once ended."""
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds() * 1000)
