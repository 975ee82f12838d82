"""Conversational fallback for low-confidence turns.

When the extractor is not sure, the dispatcher hands the turn to a
:class:`ConversationalResponder` together with the user's memory context
and the recent conversation.  The responder proposes a reply and, at most,
one action code; side effects still go through
:class:`daybook.assistant.actions.ActionHandlers`.

:class:`RuleBasedResponder` is the built-in implementation.  It never
executes anything itself: creations, deletions and modifications come back
as confirmation actions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Protocol

from daybook.assistant.actions import Action, is_all_day
from daybook.assistant.formatting import describe_range, long_date, twelve_hour
from daybook.nlu.parser import DEFAULT_TITLE
from daybook.nlu.types import Entities, Intent, ParseResult
from daybook.store.models import Conversation

__all__ = [
    "FallbackRequest",
    "FallbackReply",
    "ConversationalResponder",
    "RuleBasedResponder",
    "HELP_TEXT",
]

HELP_TEXT = (
    "I'm not sure what you'd like me to do. You can ask me to schedule events, "
    "show your calendar, or modify existing events."
)

REMINDER_LEAD_MINUTES = 15

_REMINDER = re.compile(r"\b(?:remind(?:er)?|alert|notify)\b", re.I)
_GREETING = re.compile(r"^\W*(?:hi|hello|hey|good\s+(?:morning|afternoon|evening))\b", re.I)
_THANKS = re.compile(r"\b(?:thanks|thank\s+you|cheers)\b", re.I)

# Loose keyword sets used when the extractor found no intent.
_LOOSE_INTENTS = (
    (Intent.DELETE, re.compile(r"\b(?:cancel|delete|remove|call\s+off|get\s+rid\s+of)\b", re.I)),
    (Intent.MODIFY, re.compile(r"\b(?:change|move|reschedule|update|edit|shift|postpone|push)\b", re.I)),
    (Intent.QUERY, re.compile(r"\b(?:calendar|schedule|agenda|plans|anything|events?)\b\s*\??$", re.I)),
    (Intent.CREATE, re.compile(r"\b(?:schedule|book|create|add|set\s+up|plan|arrange)\b", re.I)),
)


@dataclass
class FallbackRequest:
    user_id: str
    message: str
    parse: ParseResult
    today: date
    session_id: Optional[str] = None
    user_context: Dict[str, Any] = field(default_factory=dict)
    recent_conversations: List[Conversation] = field(default_factory=list)
    recommendations: Dict[str, List[Any]] = field(default_factory=dict)


@dataclass
class FallbackReply:
    response: str
    action: Optional[Action] = None
    data: Dict[str, Any] = field(default_factory=dict)
    intent: str = Intent.UNKNOWN.value
    entities: Dict[str, Any] = field(default_factory=dict)


class ConversationalResponder(Protocol):
    """Anything that can answer a turn the extractor could not."""

    async def respond(self, request: FallbackRequest) -> FallbackReply:
        ...


class RuleBasedResponder:
    """Deterministic responder built on the extractor's partial result."""

    async def respond(self, request: FallbackRequest) -> FallbackReply:
        message = request.message
        entities = request.parse.entities
        wire = entities.to_dict()

        if _THANKS.search(message) and request.parse.intent is Intent.UNKNOWN:
            return FallbackReply("You're welcome! Anything else for your calendar?", entities=wire)
        if _GREETING.search(message) and request.parse.intent is Intent.UNKNOWN:
            name = (request.user_context.get("personal") or {}).get("name")
            hello = f"Hi {name}!" if isinstance(name, str) and name else "Hi!"
            return FallbackReply(
                f"{hello} I can schedule events, show your calendar, or change existing events.",
                entities=wire,
            )

        if _REMINDER.search(message):
            return self._reminder(entities, wire)

        intent = request.parse.intent
        if intent is Intent.UNKNOWN:
            intent = _loose_intent(message)

        if intent is Intent.CREATE:
            return self._create(request, entities, wire)
        if intent is Intent.QUERY:
            return self._query(request, entities, wire)
        if intent is Intent.DELETE:
            return self._delete(request, entities, wire)
        if intent is Intent.MODIFY:
            return self._modify(request, entities, wire)
        return FallbackReply(HELP_TEXT, entities=wire)

    # ------------------------------------------------------------------

    def _create(self, request: FallbackRequest, entities: Entities, wire: Dict[str, Any]) -> FallbackReply:
        intent = Intent.CREATE.value
        if not entities.date:
            return FallbackReply(
                "What day would you like to schedule this event?",
                Action.REQUEST_DATE, {}, intent, wire,
            )
        if not entities.time and not is_all_day(entities.duration):
            text = "What time should the event start?"
            times = (request.recommendations or {}).get("suggestedTimes") or []
            if times:
                text += " You usually meet around " + " or ".join(twelve_hour(t) for t in times[:2]) + "."
            return FallbackReply(text, Action.REQUEST_TIME, {"suggestedTimes": times}, intent, wire)

        title = entities.title or DEFAULT_TITLE
        if is_all_day(entities.duration):
            when = f"{long_date(entities.date)} (all day)"
        else:
            when = f"{long_date(entities.date)} at {twelve_hour(entities.time)}"
        return FallbackReply(
            f'I\'ll schedule "{title}" for {when}. Is this correct?',
            Action.CONFIRM_CREATE_EVENT,
            {"event": wire},
            intent,
            wire,
        )

    def _query(self, request: FallbackRequest, entities: Entities, wire: Dict[str, Any]) -> FallbackReply:
        if entities.date:
            start = end = entities.date
        else:
            start = request.today.isoformat()
            end = (request.today + timedelta(days=6)).isoformat()
        return FallbackReply(
            f"Let me check your schedule for {describe_range(start, end)}.",
            Action.SHOW_SCHEDULE,
            {"startDate": start, "endDate": end},
            Intent.QUERY.value,
            wire,
        )

    def _delete(self, request: FallbackRequest, entities: Entities, wire: Dict[str, Any]) -> FallbackReply:
        title = _title_or_recent(entities, request.recent_conversations)
        if not title:
            return FallbackReply(
                "I can help you cancel an event. Which event would you like to remove?",
                Action.REQUEST_EVENT_SELECTION, {"events": []}, Intent.DELETE.value, wire,
            )
        data: Dict[str, Any] = {"title": title}
        if entities.date:
            data["date"] = entities.date
        return FallbackReply(
            f'Are you sure you want to cancel "{title}"?',
            Action.CONFIRM_DELETE_EVENT, data, Intent.DELETE.value, {**wire, "title": title},
        )

    def _modify(self, request: FallbackRequest, entities: Entities, wire: Dict[str, Any]) -> FallbackReply:
        title = _title_or_recent(entities, request.recent_conversations)
        changes = _changes(entities)
        if not title:
            return FallbackReply(
                "I'd be happy to help you modify an event. Which event would you like to change?",
                Action.REQUEST_EVENT_SELECTION, {"events": []}, Intent.MODIFY.value, wire,
            )
        if not changes:
            return FallbackReply(
                f'What would you like to change about "{title}"?',
                None, {}, Intent.MODIFY.value, {**wire, "title": title},
            )
        return FallbackReply(
            f'I\'ll update "{title}" to {describe_changes(changes)}. Is this correct?',
            Action.MODIFY_EVENT,
            {"title": title, "changes": changes},
            Intent.MODIFY.value,
            {**wire, "title": title},
        )

    @staticmethod
    def _reminder(entities: Entities, wire: Dict[str, Any]) -> FallbackReply:
        title = entities.title if entities.title and entities.title != DEFAULT_TITLE else "that"
        subject = f'"{title}"' if title != "that" else title
        return FallbackReply(
            f"I can't send reminders myself yet. I'd suggest setting one "
            f"{REMINDER_LEAD_MINUTES} minutes before {subject} starts in your calendar app.",
            Action.SET_REMINDER,
            {
                "title": entities.title,
                "date": entities.date,
                "time": entities.time,
                "minutesBefore": REMINDER_LEAD_MINUTES,
            },
            "REMINDER",
            wire,
        )


def _loose_intent(message: str) -> Intent:
    for intent, pattern in _LOOSE_INTENTS:
        if pattern.search(message):
            return intent
    return Intent.UNKNOWN


def _title_or_recent(entities: Entities, recent: List[Conversation]) -> Optional[str]:
    """Explicit title, else the last titled event mentioned this session."""
    if entities.title and entities.title != DEFAULT_TITLE:
        return entities.title
    for conv in reversed(recent):
        title = (conv.entities or {}).get("title")
        if title and title != DEFAULT_TITLE:
            return title
    return None


def _changes(entities: Entities) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if entities.date:
        changes["date"] = entities.date
    if entities.time:
        changes["time"] = entities.time
    if entities.end_time:
        changes["endTime"] = entities.end_time
    if entities.duration:
        changes["duration"] = entities.duration
    if entities.location:
        changes["location"] = entities.location
    return changes


def describe_changes(changes: Dict[str, Any]) -> str:
    """``{"date": ..., "time": ...}`` → ``Friday, March 15 at 3:00 PM``."""
    when = long_date(changes["date"]) if changes.get("date") else ""
    if changes.get("time"):
        clock = twelve_hour(changes["time"])
        when = f"{when} at {clock}" if when else clock
    parts = [when] if when else []
    if changes.get("duration"):
        parts.append(f"{changes['duration']} minutes")
    if changes.get("location"):
        parts.append(changes["location"])
    return ", ".join(parts) if parts else "the new details"
