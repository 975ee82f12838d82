# SPDX-License-Identifier: MIT
"""
Rule-based intent/entity extractor.

``parse(utterance)`` turns one scheduling utterance into
``ParseResult(intent, entities, confidence, raw_input)``:

1. Slots are pulled out by :mod:`daybook.nlu.slots`.
2. Intent is scored by whole-word keyword hits, ties broken
   CREATE > MODIFY > DELETE > QUERY.  A leading question word forces
   QUERY; no hits but a date/time defaults to CREATE.
3. The title is whatever remains after every recognised phrase is cut out.
4. Invalid slots are dropped, then confidence is scored.

No I/O, no shared state: the same text and clock always give the same
result.

Usage::

    parser = IntentParser()
    result = parser.parse("Schedule lunch with Alice tomorrow at 1pm")
    result.intent          # Intent.CREATE
    result.entities.time   # "13:00"
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from daybook.nlu import slots
from daybook.nlu.types import Entities, Intent, ParseResult

__all__ = [
    "INTENT_KEYWORDS",
    "IntentParser",
    "parse",
    "score_intents",
    "extract_title",
    "score_confidence",
    "DEFAULT_TITLE",
]

DEFAULT_TITLE = "New Event"

INTENT_KEYWORDS: Dict[Intent, Tuple[str, ...]] = {
    Intent.CREATE: (
        "schedule", "add", "create", "set up", "book", "plan", "make", "arrange",
        "put", "organize", "new", "meeting", "appointment", "event",
    ),
    Intent.MODIFY: (
        "change", "move", "reschedule", "update", "edit", "modify", "shift",
        "postpone", "delay", "push back", "adjust", "rename",
    ),
    Intent.DELETE: (
        "cancel", "delete", "remove", "clear", "drop", "scratch", "call off",
    ),
    Intent.QUERY: (
        "what", "when", "show", "list", "tell", "find", "search", "display",
        "free", "available", "busy", "have", "check", "look", "see", "agenda",
    ),
}

# Tie-break order.
_INTENT_PRIORITY = (Intent.CREATE, Intent.MODIFY, Intent.DELETE, Intent.QUERY)

_KEYWORD_PATTERNS: Dict[Intent, List[Pattern[str]]] = {
    intent: [slots._word(kw) for kw in keywords] for intent, keywords in INTENT_KEYWORDS.items()
}

_QUESTION_START = re.compile(r"^\W*(?:what|when|where|who|how|which)\b", re.I)

_FILLER_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\b(?:to|on|in|into|from|off)\s+my\s+(?:calendar|schedule|agenda)\b", re.I),
    re.compile(r"\b(?:can|could|would|will)\s+you\b", re.I),
    re.compile(r"\b(?:please|for\s+me)\b", re.I),
    re.compile(r"\bi\s+(?:need|want|would\s+like)\s+to\b", re.I),
]

_ORPHAN_POSSESSIVE = re.compile(r"(?<!\w)'s\b", re.I)
_DANGLING_EDGE_WORDS = r"(?:at|on|in|for|with|from|to|by|and|of|my|about|around)"
_DANGLING_HEAD = re.compile(rf"^{_DANGLING_EDGE_WORDS}\b\s*", re.I)
_DANGLING_TAIL = re.compile(rf"\s*\b{_DANGLING_EDGE_WORDS}$", re.I)
_LEADING_ARTICLE = re.compile(r"^(?:a|an|the)\b\s*", re.I)
_EDGE_PUNCTUATION = " \t\n,.;:!?-–—"
_WHITESPACE = re.compile(r"\s+")

# Pronoun leftovers ("cancel that") are not titles.
_PLACEHOLDER_TITLES = frozenset({"it", "that", "this", "them", "one", "those", "these"})

_DATE_SHAPE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_SHAPE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

# Clock-like leftovers the time extractor rejected ("at 10", "25:00").
_STRAY_CLOCK = re.compile(
    r"(?:\b(?:at|by|around|until|till)\s+|@\s*)\d{1,2}(?::\d{2})?\b(?:\s*[ap]\.?m\.?)?|\b\d{1,2}:\d{2}\b",
    re.I,
)
_NUMBER_ONLY = re.compile(r"^\d+$")


# ============================================================================
# Intent
# ============================================================================


def score_intents(text: str) -> Dict[Intent, int]:
    """Count whole-word keyword hits per intent."""
    return {
        intent: sum(1 for pattern in patterns if pattern.search(text))
        for intent, patterns in _KEYWORD_PATTERNS.items()
    }


def _detect_intent(text: str, has_when: bool) -> Intent:
    if _QUESTION_START.search(text):
        return Intent.QUERY

    scores = score_intents(text)
    best = max(scores.values())
    if best == 0:
        return Intent.CREATE if has_when else Intent.UNKNOWN
    for intent in _INTENT_PRIORITY:
        if scores[intent] == best:
            return intent
    return Intent.UNKNOWN


# ============================================================================
# Title
# ============================================================================


def _strip_edges(text: str) -> str:
    previous = None
    while previous != text:
        previous = text
        text = text.strip(_EDGE_PUNCTUATION)
        text = _DANGLING_HEAD.sub("", text)
        text = _DANGLING_TAIL.sub("", text)
        text = _LEADING_ARTICLE.sub("", text)
    return text


def extract_title(
    text: str,
    location: Optional[str] = None,
    event_keyword: Optional[str] = None,
) -> str:
    """Subtractive title: cut every recognised phrase out of *text*.

    Falls back to the matched event-type word ("Lunch"), then to
    ``"New Event"``.
    """
    work = text

    # Recurrence first: "every monday" must go as one phrase.
    for pattern in slots.RECURRENCE_PHRASE_PATTERNS:
        work = pattern.sub(" ", work)
    for pattern in slots.TIME_PHRASE_PATTERNS:
        work = pattern.sub(" ", work)
    for pattern in slots.DATE_PHRASE_PATTERNS:
        work = pattern.sub(" ", work)
    for pattern in slots.DURATION_PHRASE_PATTERNS:
        work = pattern.sub(" ", work)
    for pattern in slots.PRIORITY_PHRASE_PATTERNS:
        work = pattern.sub(" ", work)

    if location:
        prepositions = "|".join(slots.LOCATION_PREPOSITIONS)
        work = re.sub(rf"\b(?:{prepositions})\s+{re.escape(location)}", " ", work)

    work = slots.PARTICIPANT_PHRASE.sub(" ", work)
    work = re.sub(r"(?:\bwith\s+)?" + slots.EMAIL.pattern, " ", work, flags=re.I)

    for pattern in _FILLER_PATTERNS:
        work = pattern.sub(" ", work)
    for patterns in _KEYWORD_PATTERNS.values():
        for pattern in patterns:
            work = pattern.sub(" ", work)

    work = _STRAY_CLOCK.sub(" ", work)
    work = _ORPHAN_POSSESSIVE.sub(" ", work)
    work = _WHITESPACE.sub(" ", work)
    work = _strip_edges(work)

    if len(work) < 2 or _NUMBER_ONLY.match(work):
        if event_keyword:
            return event_keyword.capitalize()
        return DEFAULT_TITLE
    return work[0].upper() + work[1:]


# ============================================================================
# Validation & confidence
# ============================================================================


def _valid_date(value: Optional[str]) -> bool:
    if not value or not _DATE_SHAPE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _valid_time(value: Optional[str]) -> bool:
    return bool(value) and bool(_TIME_SHAPE.match(value))


def validate(entities: Entities) -> Entities:
    """Drop slots that fail format checks; guarantee a non-empty title."""
    if entities.date is not None and not _valid_date(entities.date):
        entities.date = None
    if entities.time is not None and not _valid_time(entities.time):
        entities.time = None
    if entities.end_time is not None and not _valid_time(entities.end_time):
        entities.end_time = None
    if entities.duration is not None and entities.duration <= 0:
        entities.duration = None
    title = (entities.title or "").strip()
    if not title or title.lower() in _PLACEHOLDER_TITLES:
        entities.title = DEFAULT_TITLE
    return entities


def score_confidence(intent: Intent, entities: Entities) -> float:
    """Base 0.5, +0.2 known intent, +0.1 per slot, +0.1 each for date,
    time and a real title.  Capped at 1.0."""
    score = 0.5
    if intent is not Intent.UNKNOWN:
        score += 0.2
    score += 0.1 * entities.slot_count
    if entities.date:
        score += 0.1
    if entities.time:
        score += 0.1
    if entities.title and entities.title != DEFAULT_TITLE:
        score += 0.1
    return round(min(score, 1.0), 2)


# ============================================================================
# Parser
# ============================================================================


class IntentParser:
    """Deterministic extractor bound to a clock.

    Parameters
    ----------
    clock:
        Returns the reference "now" for relative dates and times.  Tests
        pin it; production uses :func:`datetime.now`.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or datetime.now

    def parse(self, utterance: str, now: Optional[datetime] = None) -> ParseResult:
        return parse(utterance, now=now or self._clock())


def parse(utterance: str, now: Optional[datetime] = None) -> ParseResult:
    """Parse *utterance* into intent, entities and confidence.

    Total: any input (including empty text) yields a well-formed result.
    """
    text = utterance if isinstance(utterance, str) else str(utterance or "")
    now = now or datetime.now()
    today = now.date()

    entities = Entities()
    entities.date = slots.extract_date(text, today)

    time_match = slots.extract_time(text, now)
    if time_match is not None:
        entities.time = time_match.time
        entities.end_time = time_match.end_time
        if entities.date is None and time_match.moment is not None:
            entities.date = time_match.moment.date().isoformat()

    entities.duration = slots.extract_duration(text)
    entities.participants = slots.extract_participants(text)
    entities.location = slots.extract_location(text)

    event_keyword = None
    event_hit = slots.extract_event_type(text)
    if event_hit is not None:
        entities.event_type, event_keyword = event_hit

    entities.priority = slots.extract_priority(text)
    entities.recurrence = slots.extract_recurrence(text)
    entities.title = extract_title(text, entities.location, event_keyword)

    entities = validate(entities)
    intent = _detect_intent(text, has_when=bool(entities.date or entities.time))
    confidence = score_confidence(intent, entities)

    return ParseResult(intent=intent, entities=entities, confidence=confidence, raw_input=text)
