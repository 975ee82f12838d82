# SPDX-License-Identifier: MIT
"""
NLU type definitions.

Data structures produced by the intent/entity extractor:
- Intent: coarse classification of an utterance
- Entities: the tagged slot record (every field optional)
- Recurrence: repeat rule attached to an event
- ParseResult: the complete output of :func:`daybook.nlu.parser.parse`
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================================
# Enums
# ============================================================================


class Intent(Enum):
    """Intents the extractor can recognise."""

    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    QUERY = "QUERY"
    UNKNOWN = "UNKNOWN"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Any) -> "Intent":
        """Lenient conversion from stored strings; anything unknown is UNKNOWN."""
        if isinstance(value, Intent):
            return value
        try:
            return cls(str(value or "").upper())
        except ValueError:
            return cls.UNKNOWN


class EventType(Enum):
    """Calendar event categories."""

    MEETING = "meeting"
    MEAL = "meal"
    APPOINTMENT = "appointment"
    FITNESS = "fitness"
    TRAVEL = "travel"
    WORK = "work"
    SOCIAL = "social"
    OTHER = "other"

    def __str__(self) -> str:
        return self.value


class Priority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def __str__(self) -> str:
        return self.value


# ============================================================================
# Slots
# ============================================================================


@dataclass(frozen=True)
class Recurrence:
    """Repeat rule: ``{type: daily|weekly|monthly|yearly, interval: N}``."""

    type: str
    interval: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "interval": self.interval}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recurrence":
        return cls(type=str(data["type"]), interval=int(data.get("interval", 1)))


# Wire names for the entity bag (camelCase, as the clients send them).
_WIRE_NAMES = {
    "date": "date",
    "time": "time",
    "end_time": "endTime",
    "duration": "duration",
    "title": "title",
    "participants": "participants",
    "location": "location",
    "event_type": "eventType",
    "priority": "priority",
    "recurrence": "recurrence",
}


@dataclass
class Entities:
    """Slots extracted from one utterance.

    Every field is optional; ``participants`` is an ordered, duplicate-free
    list (first occurrence wins).
    """

    date: Optional[str] = None          # YYYY-MM-DD
    time: Optional[str] = None          # HH:MM (24h)
    end_time: Optional[str] = None      # HH:MM (24h)
    duration: Optional[int] = None      # minutes
    title: Optional[str] = None
    participants: List[str] = field(default_factory=list)
    location: Optional[str] = None
    event_type: Optional[EventType] = None
    priority: Optional[Priority] = None
    recurrence: Optional[Recurrence] = None

    def present(self) -> List[str]:
        """Names of the slots that carry a value."""
        names = []
        for name in _WIRE_NAMES:
            value = getattr(self, name)
            if value is None or value == []:
                continue
            names.append(name)
        return names

    @property
    def slot_count(self) -> int:
        return len(self.present())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize present slots with their wire names."""
        out: Dict[str, Any] = {}
        for name in self.present():
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, Recurrence):
                value = value.to_dict()
            elif isinstance(value, list):
                value = list(value)
            out[_WIRE_NAMES[name]] = value
        return out

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Entities":
        """Build from a wire dict; accepts camelCase or snake_case keys."""
        data = data or {}

        def _get(name: str) -> Any:
            wire = _WIRE_NAMES[name]
            if wire in data:
                return data[wire]
            return data.get(name)

        event_type = _get("event_type")
        priority = _get("priority")
        recurrence = _get("recurrence")
        duration = _get("duration")
        return cls(
            date=_get("date"),
            time=_get("time"),
            end_time=_get("end_time"),
            duration=int(duration) if duration is not None else None,
            title=_get("title"),
            participants=list(_get("participants") or []),
            location=_get("location"),
            event_type=EventType(event_type) if event_type else None,
            priority=Priority(priority) if priority else None,
            recurrence=Recurrence.from_dict(recurrence) if recurrence else None,
        )


@dataclass
class ParseResult:
    """Output of the extractor: ``{intent, entities, confidence, rawInput}``."""

    intent: Intent
    entities: Entities
    confidence: float
    raw_input: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.value,
            "entities": self.entities.to_dict(),
            "confidence": self.confidence,
            "rawInput": self.raw_input,
        }
