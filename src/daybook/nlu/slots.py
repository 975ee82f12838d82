# SPDX-License-Identifier: MIT
"""
Slot Extraction Module.

Extracts structured entities (slots) from scheduling utterances:
- Dates: "tomorrow", "next friday", "03/15/2024", "March 15th"
- Times: "1pm", "14:30", "noon", "from 2 to 4pm", "in 2 hours"
- Durations: "for 90 minutes", "1 hour 30 minutes", "all day"
- People, places, event categories, priority and repeat rules

Every extractor is a pure function of its input text plus the reference
clock passed in by the caller.  Compiled patterns carry no match state, so
call order never matters.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Pattern, Tuple

from daybook.nlu.types import EventType, Priority, Recurrence


# ============================================================================
# Vocabulary
# ============================================================================

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

MONTHS: Dict[str, int] = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sept": 9, "sep": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}

NAMED_TIMES: Dict[str, str] = {
    "noon": "12:00",
    "midnight": "00:00",
    "morning": "09:00",
    "afternoon": "14:00",
    "evening": "18:00",
    "tonight": "20:00",
    "night": "20:00",
    "breakfast": "08:00",
    "lunch": "12:00",
    "dinner": "18:00",
}

# First type whose list matches wins, so order matters.
EVENT_TYPE_KEYWORDS: List[Tuple[EventType, Tuple[str, ...]]] = [
    (EventType.MEETING, ("meeting", "call", "conference", "session", "discussion", "standup", "sync", "interview")),
    (EventType.MEAL, ("lunch", "dinner", "breakfast", "brunch", "coffee", "drinks", "drink", "meal")),
    (EventType.APPOINTMENT, ("appointment", "dentist", "doctor", "checkup", "visit", "consultation", "haircut")),
    (EventType.FITNESS, ("workout", "gym", "exercise", "run", "yoga", "training", "swim")),
    (EventType.TRAVEL, ("flight", "travel", "trip", "vacation", "drive", "train")),
    (EventType.WORK, ("work", "project", "deadline", "presentation", "review", "report")),
    (EventType.SOCIAL, ("party", "celebration", "birthday", "wedding", "hangout", "reunion")),
]

# Words that look like names or places when title-cased but never are.
CALENDAR_WORDS = frozenset(
    [w.capitalize() for w in WEEKDAYS]
    + [m.capitalize() for m in MONTHS]
    + ["Today", "Tomorrow", "Tonight", "Yesterday", "Next", "This", "Noon", "Midnight"]
)

_NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "fifteen": 15,
    "twenty": 20, "thirty": 30, "forty": 40, "forty-five": 45, "ninety": 90,
}

_WEEKDAY_RE = "|".join(WEEKDAYS)
_MONTH_RE = "|".join(sorted(MONTHS, key=len, reverse=True))
_NUMBER_RE = r"\d+|" + "|".join(sorted(_NUMBER_WORDS, key=len, reverse=True))
_PERIOD_RE = r"([ap])\.?m\.?(?!\w)"


def _word(term: str) -> Pattern[str]:
    """Case-insensitive whole-word pattern for a (possibly multi-word) term."""
    return re.compile(r"\b" + r"\s+".join(re.escape(t) for t in term.split()) + r"\b", re.I)


# ============================================================================
# Dates
# ============================================================================

_NAMED_DAY_OFFSETS: List[Tuple[Pattern[str], int]] = [
    (_word("day after tomorrow"), 2),
    (_word("tomorrow"), 1),
    (re.compile(r"\b(?:today|tonight)\b", re.I), 0),
    (_word("yesterday"), -1),
    (_word("next week"), 7),
    (_word("next month"), 30),
]

_NEXT_WEEKDAY = re.compile(rf"\bnext\s+({_WEEKDAY_RE})\b", re.I)
_THIS_WEEKDAY = re.compile(rf"\bthis\s+({_WEEKDAY_RE})\b", re.I)
_BARE_WEEKDAY = re.compile(rf"\b({_WEEKDAY_RE})\b", re.I)

_ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_US_SLASH_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{4}))?\b")
_US_DASH_DATE = re.compile(r"\b(\d{1,2})-(\d{1,2})-(\d{4})\b")
_MONTH_DAY = re.compile(
    rf"\b({_MONTH_RE})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b(?:,?\s*(\d{{4}})\b)?", re.I
)
_DAY_MONTH = re.compile(
    rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?({_MONTH_RE})\b(?:,?\s*(\d{{4}})\b)?", re.I
)

DATE_PHRASE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:\b(?:on|for)\s+)?\bthe\s+day\s+after\s+tomorrow\b", re.I),
    re.compile(r"(?:\b(?:on|for)\s+)?\bday\s+after\s+tomorrow\b", re.I),
    re.compile(r"(?:\b(?:on|for|by)\s+)?\b(?:today|tonight|tomorrow|yesterday)\b", re.I),
    re.compile(r"(?:\b(?:on|for|by)\s+)?\bnext\s+(?:week|month)\b", re.I),
    re.compile(rf"(?:\b(?:on|for|by)\s+)?\b(?:next|this)\s+(?:{_WEEKDAY_RE})\b", re.I),
    re.compile(rf"(?:\b(?:on|for|by)\s+)?\b(?:{_WEEKDAY_RE})\b", re.I),
    re.compile(r"(?:\b(?:on|for|by)\s+)?\b\d{4}-\d{1,2}-\d{1,2}\b", re.I),
    re.compile(r"(?:\b(?:on|for|by)\s+)?\b\d{1,2}/\d{1,2}(?:/\d{4})?\b", re.I),
    re.compile(r"(?:\b(?:on|for|by)\s+)?\b\d{1,2}-\d{1,2}-\d{4}\b", re.I),
    re.compile(
        rf"(?:\b(?:on|for|by)\s+)?\b(?:{_MONTH_RE})\.?\s+\d{{1,2}}(?:st|nd|rd|th)?\b(?:,?\s*\d{{4}}\b)?",
        re.I,
    ),
    re.compile(
        rf"(?:\b(?:on|for|by)\s+)?(?:\bthe\s+)?\b\d{{1,2}}(?:st|nd|rd|th)?\s+(?:of\s+)?(?:{_MONTH_RE})\b(?:,?\s*\d{{4}}\b)?",
        re.I,
    ),
]


def _weekday_offset(today: date, weekday_name: str) -> int:
    """Smallest positive offset (1..7) landing on *weekday_name*."""
    target = WEEKDAYS.index(weekday_name.lower())
    delta = (target - today.weekday()) % 7
    return delta or 7


def _format_date(year: int, month: int, day: int) -> str:
    return f"{year:04d}-{month:02d}-{day:02d}"


def _resolve_year(today: date, month: int, day: int) -> str:
    """Current year unless the date already passed, then next year.

    Impossible dates are returned unresolved; the validation pass drops them.
    """
    try:
        candidate = date(today.year, month, day)
    except ValueError:
        return _format_date(today.year, month, day)
    if candidate < today:
        return _format_date(today.year + 1, month, day)
    return candidate.isoformat()


def extract_date(text: str, today: date) -> Optional[str]:
    """Resolve the first date expression in *text* relative to *today*.

    Precedence: named offsets, ``next <weekday>``, ``this <weekday>``,
    bare weekday, explicit formats.

    Returns:
        ISO ``YYYY-MM-DD`` string (possibly an invalid calendar date for
        explicit formats), or None.
    """
    for pattern, offset in _NAMED_DAY_OFFSETS:
        if pattern.search(text):
            return (today + timedelta(days=offset)).isoformat()

    for pattern in (_NEXT_WEEKDAY, _THIS_WEEKDAY, _BARE_WEEKDAY):
        m = pattern.search(text)
        if m:
            return (today + timedelta(days=_weekday_offset(today, m.group(1)))).isoformat()

    m = _ISO_DATE.search(text)
    if m:
        return _format_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = _US_SLASH_DATE.search(text)
    if m:
        month, day = int(m.group(1)), int(m.group(2))
        if m.group(3):
            return _format_date(int(m.group(3)), month, day)
        return _resolve_year(today, month, day)

    m = _US_DASH_DATE.search(text)
    if m:
        return _format_date(int(m.group(3)), int(m.group(1)), int(m.group(2)))

    m = _MONTH_DAY.search(text)
    if m:
        month, day = MONTHS[m.group(1).lower()], int(m.group(2))
        if m.group(3):
            return _format_date(int(m.group(3)), month, day)
        return _resolve_year(today, month, day)

    m = _DAY_MONTH.search(text)
    if m:
        day, month = int(m.group(1)), MONTHS[m.group(2).lower()]
        if m.group(3):
            return _format_date(int(m.group(3)), month, day)
        return _resolve_year(today, month, day)

    return None


# ============================================================================
# Times
# ============================================================================


@dataclass(frozen=True)
class TimeMatch:
    """Extracted time information.

    ``moment`` is only set for relative expressions ("in 2 hours"), where
    the resolved instant may also imply a date.
    """

    time: str
    end_time: Optional[str] = None
    moment: Optional[datetime] = None


_RANGE_FROM = re.compile(
    r"\bfrom\s+(\d{1,2})(?::([0-5]\d))?(?:\s*" + _PERIOD_RE + r")?"
    r"\s*(?:to|until|till|-|–)\s*"
    r"(\d{1,2})(?::([0-5]\d))?(?:\s*" + _PERIOD_RE + r")?",
    re.I,
)
_RANGE_DASH = re.compile(
    r"\b(\d{1,2})(?::([0-5]\d))?(?:\s*" + _PERIOD_RE + r")?"
    r"\s*(?:-|–|to)\s*"
    r"(\d{1,2})(?::([0-5]\d))?\s*" + _PERIOD_RE,
    re.I,
)
_CLOCK_12H = re.compile(r"\b(\d{1,2})(?::([0-5]\d))?\s*" + _PERIOD_RE, re.I)
_CLOCK_24H = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")

_NAMED_TIME_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (_word(name), value) for name, value in NAMED_TIMES.items()
]

_RELATIVE_IN = re.compile(
    rf"\bin\s+({_NUMBER_RE})\s+(hours?|hrs?|minutes?|mins?)\b", re.I
)
_RELATIVE_FROM_NOW = re.compile(
    rf"\b({_NUMBER_RE})\s+(hours?|hrs?|minutes?|mins?)\s+from\s+now\b", re.I
)
_RELATIVE_HALF_HOUR = re.compile(r"\bin\s+(?:a\s+)?half\s+(?:an\s+)?hour\b", re.I)

TIME_PHRASE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:\b(?:at|by|around)\s+|@\s*)?" + _RANGE_FROM.pattern, re.I),
    re.compile(r"(?:\b(?:at|by|around|between)\s+|@\s*)?" + _RANGE_DASH.pattern, re.I),
    re.compile(r"(?:\b(?:at|by|around|until|till)\s+|@\s*)?" + _CLOCK_12H.pattern, re.I),
    re.compile(r"(?:\b(?:at|by|around|until|till)\s+|@\s*)?" + _CLOCK_24H.pattern, re.I),
    _RELATIVE_IN,
    _RELATIVE_FROM_NOW,
    _RELATIVE_HALF_HOUR,
    # Meal words stay in the title: "lunch" is both a time and a subject.
    re.compile(
        r"(?:\b(?:in\s+the|this|at|around)\s+)?\b(?:noon|midnight|morning|afternoon|evening|tonight|night)\b",
        re.I,
    ),
]


def to_24h(hour: int, minute: int, period: Optional[str]) -> str:
    """Convert a 12h reading to ``HH:MM``.

    pm with hour < 12 adds 12; am with hour 12 becomes 0.  Out-of-range
    readings are returned as-is so the validation pass can drop them.
    """
    if period:
        period = period.lower()
        if period == "p" and hour < 12:
            hour += 12
        elif period == "a" and hour == 12:
            hour = 0
    return f"{hour:02d}:{minute:02d}"


def _number(token: str) -> int:
    token = token.lower()
    if token.isdigit():
        return int(token)
    return _NUMBER_WORDS.get(token, 0)


def _range_match(m: "re.Match[str]") -> TimeMatch:
    sh, sm, sp, eh, em, ep = m.groups()
    start_hour, end_hour = int(sh), int(eh)
    if sp is None and ep is not None:
        # "2-4pm" shares the period; "11-1pm" crosses noon.
        if start_hour <= end_hour or start_hour == 12:
            sp = ep
        else:
            sp = "a" if ep.lower() == "p" else "p"
    return TimeMatch(
        time=to_24h(start_hour, int(sm or 0), sp),
        end_time=to_24h(end_hour, int(em or 0), ep),
    )


def extract_time(text: str, now: datetime) -> Optional[TimeMatch]:
    """Extract a wall-clock time (and optional end time) from *text*.

    Explicit clock readings outrank named times, so "lunch at 1pm" is
    13:00 rather than noon.  Order: range, 12h clock, 24h clock, named
    time, relative offset from *now*.
    """
    m = _RANGE_FROM.search(text) or _RANGE_DASH.search(text)
    if m:
        return _range_match(m)

    m = _CLOCK_12H.search(text)
    if m:
        return TimeMatch(time=to_24h(int(m.group(1)), int(m.group(2) or 0), m.group(3)))

    m = _CLOCK_24H.search(text)
    if m:
        return TimeMatch(time=f"{int(m.group(1)):02d}:{m.group(2)}")

    for pattern, value in _NAMED_TIME_PATTERNS:
        if pattern.search(text):
            return TimeMatch(time=value)

    delta: Optional[timedelta] = None
    if _RELATIVE_HALF_HOUR.search(text):
        delta = timedelta(minutes=30)
    else:
        m = _RELATIVE_IN.search(text) or _RELATIVE_FROM_NOW.search(text)
        if m:
            amount = _number(m.group(1))
            unit = m.group(2).lower()
            if unit.startswith("h"):
                delta = timedelta(hours=amount)
            else:
                delta = timedelta(minutes=amount)
    if delta:
        moment = now + delta
        return TimeMatch(time=moment.strftime("%H:%M"), moment=moment)

    return None


# ============================================================================
# Durations
# ============================================================================

_DURATION_ALL_DAY = re.compile(r"\b(?:all|full|whole)[\s-]day\b", re.I)
_DURATION_HALF_HOUR = re.compile(r"\bhalf\s+(?:an\s+)?hour\b", re.I)
_DURATION_QUARTER_HOUR = re.compile(r"\bquarter\s+(?:of\s+an\s+)?hour\b", re.I)
_DURATION_HOURS = re.compile(
    r"\b(\d+(?:\.\d+)?)\s*(?:hours?|hrs?)\b(?:\s*(?:and\s+)?(\d+)\s*(?:minutes?|mins?)\b)?", re.I
)
_DURATION_AN_HOUR = re.compile(r"\b(?:an|one)\s+hour\b", re.I)
_DURATION_MINUTES = re.compile(r"\b(\d+)\s*(?:minutes?|mins?)\b", re.I)

DURATION_PHRASE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:\b(?:for|lasting)\s+)?(?:the\s+|an?\s+)?" + p.pattern, re.I)
    for p in (
        _DURATION_ALL_DAY,
        _DURATION_HALF_HOUR,
        _DURATION_QUARTER_HOUR,
        _DURATION_HOURS,
        _DURATION_AN_HOUR,
        _DURATION_MINUTES,
    )
]

_RELATIVE_PATTERNS = (_RELATIVE_IN, _RELATIVE_FROM_NOW, _RELATIVE_HALF_HOUR)


def extract_duration(text: str) -> Optional[int]:
    """Extract a duration in minutes.

    Relative offsets ("in 2 hours") are start times, not durations, and are
    removed before matching.
    """
    for pattern in _RELATIVE_PATTERNS:
        text = pattern.sub(" ", text)

    if _DURATION_ALL_DAY.search(text):
        return 480
    if _DURATION_HALF_HOUR.search(text):
        return 30
    if _DURATION_QUARTER_HOUR.search(text):
        return 15
    m = _DURATION_HOURS.search(text)
    if m:
        return int(round(float(m.group(1)) * 60)) + int(m.group(2) or 0)
    if _DURATION_AN_HOUR.search(text):
        return 60
    m = _DURATION_MINUTES.search(text)
    if m:
        return int(m.group(1))
    return None


# ============================================================================
# Participants
# ============================================================================

_NAME_WORD = r"[A-Z][a-zA-Z'\-]*[a-z]"
_NAME = rf"{_NAME_WORD}(?:[ \t]+{_NAME_WORD})*"
PARTICIPANT_PHRASE = re.compile(
    rf"(?i:\bwith)\s+({_NAME}(?:\s*,\s*(?:(?i:and)\s+)?{_NAME}|\s+(?i:and)\s+{_NAME})*)"
)
EMAIL = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")
_NAME_SPLIT = re.compile(r"\s*,\s*(?:and\s+)?|\s+and\s+", re.I)


def _clean_name(raw: str) -> Optional[str]:
    words = raw.split()
    while words and words[-1] in CALENDAR_WORDS:
        words.pop()
    while words and words[0] in CALENDAR_WORDS:
        words.pop(0)
    return " ".join(words) or None


def extract_participants(text: str) -> List[str]:
    """Names after ``with`` plus any e-mail addresses, first occurrence wins."""
    found: List[str] = []
    for m in PARTICIPANT_PHRASE.finditer(text):
        for raw in _NAME_SPLIT.split(m.group(1)):
            name = _clean_name(raw)
            if name:
                found.append(name)
    found.extend(EMAIL.findall(text))

    seen = set()
    unique: List[str] = []
    for name in found:
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(name)
    return unique


# ============================================================================
# Location
# ============================================================================

LOCATION_PREPOSITIONS = ("at", "in", "on", "from", "to", "via")
_PLACE_WORD = r"[A-Z][\w'&\-]*"
_LOCATION_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    (
        prep,
        re.compile(
            rf"\b{prep}\s+((?:the\s+)?{_PLACE_WORD}(?:[ \t]+(?:of[ \t]+|the[ \t]+|&[ \t]+)?(?:{_PLACE_WORD}|\d+\w*))*)"
        ),
    )
    for prep in LOCATION_PREPOSITIONS
]
_LOOKS_LIKE_TIME = re.compile(r"^\d|\b\d{1,2}(?::\d{2})?\s*[ap]\.?m\b|\b(?:noon|midnight)\b", re.I)


def extract_location(text: str) -> Optional[str]:
    """Title-cased place phrase after a locative preposition.

    Phrases that read as times or calendar words ("on Friday", "in March")
    are rejected.
    """
    for _prep, pattern in _LOCATION_PATTERNS:
        for m in pattern.finditer(text):
            phrase = m.group(1).strip()
            if _LOOKS_LIKE_TIME.search(phrase):
                continue
            first = phrase.split()[0]
            if first in CALENDAR_WORDS:
                continue
            if len(phrase) < 2:
                continue
            return phrase
    return None


# ============================================================================
# Event type, priority, recurrence
# ============================================================================

_EVENT_TYPE_PATTERNS: List[Tuple[EventType, List[Tuple[str, Pattern[str]]]]] = [
    (event_type, [(kw, _word(kw)) for kw in keywords])
    for event_type, keywords in EVENT_TYPE_KEYWORDS
]


def extract_event_type(text: str) -> Optional[Tuple[EventType, str]]:
    """Return ``(event_type, matched_keyword)`` for the first matching type."""
    for event_type, keywords in _EVENT_TYPE_PATTERNS:
        for keyword, pattern in keywords:
            if pattern.search(text):
                return event_type, keyword
    return None


def categorize_title(title: str) -> EventType:
    """Event type for a free-text title; OTHER when nothing matches."""
    hit = extract_event_type(title or "")
    return hit[0] if hit else EventType.OTHER


_PRIORITY_PATTERNS: List[Tuple[Priority, Pattern[str]]] = [
    (Priority.HIGH, re.compile(r"\b(?:urgent(?:ly)?|asap|important|high[\s-]priority)\b", re.I)),
    (Priority.LOW, re.compile(r"\b(?:low[\s-]priority|optional|if\s+possible)\b", re.I)),
    (Priority.MEDIUM, re.compile(r"\b(?:medium|normal)[\s-]priority\b", re.I)),
]

PRIORITY_PHRASE_PATTERNS: List[Pattern[str]] = [p for _, p in _PRIORITY_PATTERNS]


def extract_priority(text: str) -> Optional[Priority]:
    """Priority only when stated explicitly."""
    for priority, pattern in _PRIORITY_PATTERNS:
        if pattern.search(text):
            return priority
    return None


_UNIT_TO_RULE = {"day": "daily", "week": "weekly", "month": "monthly", "year": "yearly"}

_RECUR_EVERY_N = re.compile(r"\bevery\s+(\d+)\s+(day|week|month|year)s?\b", re.I)
_RECUR_EVERY_WEEKDAY = re.compile(rf"\bevery\s+(?:{_WEEKDAY_RE})\b", re.I)
_RECUR_SIMPLE: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\b(?:daily|every\s+day)\b", re.I), "daily"),
    (re.compile(r"\b(?:weekly|every\s+week)\b", re.I), "weekly"),
    (re.compile(r"\b(?:monthly|every\s+month)\b", re.I), "monthly"),
    (re.compile(r"\b(?:yearly|annually|every\s+year)\b", re.I), "yearly"),
]

RECURRENCE_PHRASE_PATTERNS: List[Pattern[str]] = [
    _RECUR_EVERY_N,
    _RECUR_EVERY_WEEKDAY,
    *[p for p, _ in _RECUR_SIMPLE],
]


def extract_recurrence(text: str) -> Optional[Recurrence]:
    """Repeat rule: "daily", "every week", "every 2 months", "every monday"."""
    m = _RECUR_EVERY_N.search(text)
    if m:
        interval = int(m.group(1))
        if interval > 0:
            return Recurrence(type=_UNIT_TO_RULE[m.group(2).lower()], interval=interval)
    if _RECUR_EVERY_WEEKDAY.search(text):
        return Recurrence(type="weekly", interval=1)
    for pattern, rule in _RECUR_SIMPLE:
        if pattern.search(text):
            return Recurrence(type=rule, interval=1)
    return None
