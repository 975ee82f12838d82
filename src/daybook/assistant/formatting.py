"""Reply formatting: long dates, 12-hour clock, schedule lists."""

from __future__ import annotations

from datetime import date
from typing import Iterable, List, Optional

from daybook.store.models import CalendarEvent

__all__ = ["long_date", "twelve_hour", "describe_range", "format_schedule", "event_when"]


def long_date(iso_date: str) -> str:
    """``2024-03-12`` → ``Tuesday, March 12``."""
    d = date.fromisoformat(iso_date)
    return f"{d:%A}, {d:%B} {d.day}"


def twelve_hour(hhmm: str) -> str:
    """``13:05`` → ``1:05 PM``."""
    hour, minute = (int(part) for part in hhmm.split(":", 1))
    period = "AM" if hour < 12 else "PM"
    hour12 = hour % 12 or 12
    return f"{hour12}:{minute:02d} {period}"


def describe_range(start_date: str, end_date: Optional[str] = None) -> str:
    if not end_date or end_date == start_date:
        return long_date(start_date)
    return f"{long_date(start_date)} to {long_date(end_date)}"


def event_when(event: CalendarEvent, with_date: bool = False) -> str:
    if event.all_day or not event.time:
        when = "all day"
    else:
        when = twelve_hour(event.time)
        if event.end_time:
            when = f"{when} to {twelve_hour(event.end_time)}"
    if with_date:
        return f"{long_date(event.date)}, {when}"
    return when


def format_schedule(events: Iterable[CalendarEvent], multi_day: bool = False) -> str:
    """Bulleted schedule, one line per event, optional location line."""
    lines: List[str] = ["Here's your schedule:", ""]
    for event in events:
        when = event_when(event, with_date=multi_day)
        connector = "," if multi_day or event.all_day or not event.time else " at"
        lines.append(f"• {event.title}{connector} {when}")
        if event.location:
            lines.append(f"  📍 {event.location}")
    return "\n".join(lines)
