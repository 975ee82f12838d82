"""Pattern mining helpers for the memory service.

Pure functions over events and conversations; the service decides what to
persist.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional

from daybook.nlu.slots import CALENDAR_WORDS, EVENT_TYPE_KEYWORDS
from daybook.store.models import CalendarEvent, Conversation

__all__ = [
    "STOPWORDS",
    "context_score",
    "time_bucket",
    "top_hours",
    "most_common_duration",
    "frequent_names",
    "language_patterns",
]

STOPWORDS = frozenset({
    "the", "and", "for", "with", "can", "you", "please", "schedule", "meeting",
    "event", "that", "this", "what", "when", "have", "from", "your", "would",
    "could", "about", "there", "need", "want", "tomorrow", "today",
})

_EVENT_WORDS = frozenset(
    kw.capitalize() for _, keywords in EVENT_TYPE_KEYWORDS for kw in keywords
)
_NOT_NAMES = CALENDAR_WORDS | _EVENT_WORDS | frozenset({
    "The", "My", "Our", "New", "Event", "Team", "Weekly", "Daily", "Monthly",
    "Quick", "Follow", "Up", "With", "And", "For", "At", "On", "In",
})

_NAME_CANDIDATE = re.compile(r"\b[A-Z][a-z]+(?:\s[A-Z][a-z]+)?\b")
_TOKEN = re.compile(r"[a-z][a-z'\-]*")


def context_score(intent: str, entities: Mapping[str, Any], message: str) -> float:
    """Conversation weight: base 1.0, +0.5 known intent, +0.2 per slot,
    +0.3 for long messages, capped at 5.0."""
    score = 1.0
    if intent and intent != "UNKNOWN":
        score += 0.5
    score += 0.2 * sum(1 for v in entities.values() if v not in (None, "", [], {}))
    if len(message or "") > 50:
        score += 0.3
    return round(min(score, 5.0), 2)


def time_bucket(hhmm: str) -> Optional[str]:
    """morning (< 12), afternoon (< 17) or evening."""
    try:
        hour = int(str(hhmm).split(":", 1)[0])
    except ValueError:
        return None
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    return "evening"


def top_hours(events: Iterable[CalendarEvent], n: int = 3) -> List[str]:
    """Most frequent start hours as ``HH:00`` strings."""
    counts: Counter = Counter()
    for event in events:
        if event.time:
            counts[event.time[:2]] += 1
    return [f"{hour}:00" for hour, _ in counts.most_common(n)]


def most_common_duration(events: Iterable[CalendarEvent]) -> Optional[int]:
    counts = Counter(e.duration for e in events if e.duration and not e.all_day)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def _split_candidate(candidate: str) -> List[str]:
    words = candidate.split()
    if all(w not in _NOT_NAMES for w in words):
        return [candidate]
    return [w for w in words if w not in _NOT_NAMES]


def frequent_names(events: Iterable[CalendarEvent], n: int = 5) -> List[str]:
    """Title-cased names seen in event titles and descriptions."""
    counts: Counter = Counter()
    for event in events:
        text = f"{event.title} {event.description or ''}"
        for m in _NAME_CANDIDATE.finditer(text):
            for name in _split_candidate(m.group(0)):
                counts[name] += 1
    return [name for name, _ in counts.most_common(n)]


def language_patterns(
    conversations: Iterable[Conversation], min_length: int = 4, min_count: int = 3
) -> Dict[str, int]:
    """Recurring vocabulary across the user's own messages."""
    counts: Counter = Counter()
    for conv in conversations:
        for token in _TOKEN.findall((conv.user_message or "").lower()):
            if len(token) >= min_length and token not in STOPWORDS:
                counts[token] += 1
    return {token: count for token, count in counts.most_common() if count >= min_count}
