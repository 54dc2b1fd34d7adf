from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field
from pydantic import ConfigDict


def _now_utc() -> datetime:
    return datetime.now(UTC)


MessageRole = Literal["user", "assistant", "system"]
# pending: optimistic echo, sent: accepted remotely, failed: delivery exhausted,
# incomplete: reply aborted mid-stream
MessageStatus = Literal["pending", "sent", "failed", "incomplete"]
PersonaKey = Literal["best-friend", "professional-coach", "tough-love"]
TurnErrorKind = Literal[
    "gate_timeout",
    "delivery_failed",
    "reply_failed",
    "transcription_failed",
    "cancelled",
]
RestoreSource = Literal["cache", "remote", "greeting"]


class Message(BaseModel):
    """One entry of a conversation; list position, not timestamp, defines order."""

    id: str
    role: MessageRole
    content: str = ""
    timestamp: datetime = Field(default_factory=_now_utc)
    image_url: Optional[str] = None
    is_streaming: bool = False
    status: MessageStatus | None = None


class SessionPointer(BaseModel):
    last_active_conversation_id: str
    last_updated: datetime = Field(default_factory=_now_utc)


class LearningRecord(BaseModel):
    """Lossy summary of what a conversation revealed about the user."""

    conversation_id: str
    message_count: int = 0
    topics_discussed: Set[str] = Field(default_factory=set)
    user_preferences: Dict[str, str] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=_now_utc)


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    name: str
    success: bool
    message: str
    tool_call_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class TurnError(BaseModel):
    kind: TurnErrorKind
    message: str
    retryable: bool = True
    unsent_text: Optional[str] = None


class TurnResult(BaseModel):
    conversation_id: str
    ok: bool
    user_message: Message | None = None
    reply: Message | None = None
    tool_results: List[ToolResult] = Field(default_factory=list)
    error: TurnError | None = None
    gate_timed_out: bool = False
    delivery_attempts: int = 0


class MealRecord(BaseModel):
    id: str
    user_id: str
    name: str
    meal_type: str = "Other"  # Breakfast/Lunch/Dinner/... as offered to the assistant
    calories: float = Field(default=0.0, ge=0.0)
    protein: float = 0.0
    carbs: float = 0.0
    fat: float = 0.0
    items: List[str] = Field(default_factory=list)
    date: datetime = Field(default_factory=_now_utc)


class WeightRecord(BaseModel):
    id: str
    user_id: str
    weight: float = Field(gt=0.0, description="pounds")
    date: datetime = Field(default_factory=_now_utc)


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    user_id: str
    name: Optional[str] = None
    current_weight: float | None = None
    target_weight: float | None = None
    daily_calorie_goal: float | None = None
    dietary_preferences: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_now_utc)


class OpenConversationRequest(BaseModel):
    conversation_id: Optional[str] = None
    persona: PersonaKey | None = None
    user_id: Optional[str] = None


class ConversationResponse(BaseModel):
    conversation_id: str
    persona: PersonaKey
    restored_from: RestoreSource
    messages: List[Message] = Field(default_factory=list)


class MessageListResponse(BaseModel):
    conversation_id: str
    messages: List[Message] = Field(default_factory=list)


class TurnRequest(BaseModel):
    text: str = Field(default="", max_length=8000)
    image_url: Optional[str] = None


class PersonalityRequest(BaseModel):
    persona: PersonaKey


class ConversationStatusResponse(BaseModel):
    conversation_id: str
    turn_active: bool
    run_id: Optional[str] = None
    last_updated: datetime | None = None
