"""Data models for the calendar and memory store.

Plain dataclasses; serialization to the camelCase wire format lives in
``to_dict`` so the API layer never reaches into store rows.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

__all__ = [
    "ALL_DAY_MINUTES",
    "is_all_day",
    "MemoryCategory",
    "FeedbackType",
    "CalendarEvent",
    "MemoryRecord",
    "Conversation",
    "FeedbackRecord",
    "new_event_id",
    "utcnow",
]


def utcnow() -> datetime:
    """Naive local wall-clock timestamp used for all store bookkeeping."""
    return datetime.now()


def new_event_id() -> str:
    """``evt_<epoch ms>_<random>``."""
    return f"evt_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


class MemoryCategory(str, Enum):
    PERSONAL = "personal"
    BEHAVIORAL = "behavioral"
    CONTEXTUAL = "contextual"
    PREFERENCES = "preferences"
    RELATIONSHIPS = "relationships"

    @classmethod
    def values(cls) -> list:
        return [c.value for c in cls]


class FeedbackType(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    CORRECTION = "correction"


# Durations of a full working day or more make an event all-day.
ALL_DAY_MINUTES = 480


def is_all_day(duration: Any) -> bool:
    try:
        return duration is not None and int(duration) >= ALL_DAY_MINUTES
    except (TypeError, ValueError):
        return False


@dataclass
class CalendarEvent:
    """One calendar entry.

    Invariant: an all-day event carries no wall-clock time.
    """

    user_id: str
    title: str
    date: str                           # YYYY-MM-DD
    time: Optional[str] = None          # HH:MM
    end_time: Optional[str] = None
    duration: Optional[int] = None      # minutes
    description: str = ""
    type: str = "other"
    location: Optional[str] = None
    all_day: bool = False
    recurring: bool = False
    recurring_type: Optional[str] = None
    id: str = field(default_factory=new_event_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.all_day:
            self.time = None
            self.end_time = None
        if not self.recurring:
            self.recurring_type = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "description": self.description,
            "date": self.date,
            "time": self.time,
            "endTime": self.end_time,
            "duration": self.duration,
            "type": self.type,
            "location": self.location,
            "allDay": self.all_day,
            "recurring": self.recurring,
            "recurringType": self.recurring_type,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class MemoryRecord:
    """A per-user key/value fact, unique on ``(user_id, key)``."""

    user_id: str
    key: str
    value: Any
    category: str = MemoryCategory.CONTEXTUAL.value
    relevance_score: float = 1.0
    created_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)
    access_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "category": self.category,
            "relevanceScore": self.relevance_score,
            "createdAt": _iso(self.created_at),
            "lastAccessed": _iso(self.last_accessed),
            "accessCount": self.access_count,
        }


@dataclass
class Conversation:
    """One user turn and the assistant reply."""

    user_id: str
    user_message: str
    assistant_response: str
    intent: str = "UNKNOWN"
    entities: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    context_score: float = 1.0
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "userMessage": self.user_message,
            "assistantResponse": self.assistant_response,
            "intent": self.intent,
            "entities": self.entities,
            "contextScore": self.context_score,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class FeedbackRecord:
    user_id: str
    conversation_id: Optional[int]
    feedback_type: str
    feedback_text: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "feedbackType": self.feedback_type,
            "feedbackText": self.feedback_text,
            "createdAt": _iso(self.created_at),
        }
