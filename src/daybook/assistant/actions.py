"""Shared calendar action handlers.

Both the text dispatcher and the realtime audio bridge resolve calendar
side effects through :class:`ActionHandlers`, so event invariants
(all-day events carry no time, durations of a full day or more are
all-day) are enforced in exactly one place.

Handlers never raise on store failure: they log the exception and return
an ``ERROR`` outcome with a generic apology.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from daybook.assistant.formatting import (
    describe_range,
    event_when,
    format_schedule,
    long_date,
    twelve_hour,
)
from daybook.errors import StoreError
from daybook.logs.logger import JsonlLogger
from daybook.nlu.parser import DEFAULT_TITLE
from daybook.nlu.slots import categorize_title
from daybook.store.base import CalendarStore
from daybook.store.models import ALL_DAY_MINUTES, CalendarEvent, is_all_day

logger = logging.getLogger(__name__)

__all__ = [
    "Action",
    "ActionOutcome",
    "ActionHandlers",
    "ALL_DAY_MINUTES",
    "is_all_day",
    "CONFIRMATION_ACTIONS",
    "CLARIFICATION_ACTIONS",
]

SEARCH_WINDOW_DAYS = 30

_DATE_SHAPE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_SHAPE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class Action(str, Enum):
    """Action codes shared by the text and audio paths."""

    EVENT_CREATED = "EVENT_CREATED"
    EVENT_UPDATED = "EVENT_UPDATED"
    EVENT_DELETED = "EVENT_DELETED"
    SHOW_SCHEDULE = "SHOW_SCHEDULE"
    SHOW_EMPTY_SCHEDULE = "SHOW_EMPTY_SCHEDULE"
    REQUEST_DATE = "REQUEST_DATE"
    REQUEST_TIME = "REQUEST_TIME"
    REQUEST_EVENT_SELECTION = "REQUEST_EVENT_SELECTION"
    CONFIRM_CREATE_EVENT = "CONFIRM_CREATE_EVENT"
    CONFIRM_DELETE_EVENT = "CONFIRM_DELETE_EVENT"
    MODIFY_EVENT = "MODIFY_EVENT"
    SET_REMINDER = "SET_REMINDER"
    ERROR = "ERROR"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def lookup(cls, value: Any) -> Optional["Action"]:
        if isinstance(value, Action):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


# Dry-run actions: the reply asks, a follow-up "yes" executes.
CONFIRMATION_ACTIONS = frozenset({
    Action.CONFIRM_CREATE_EVENT,
    Action.CONFIRM_DELETE_EVENT,
    Action.MODIFY_EVENT,
})

CLARIFICATION_ACTIONS = frozenset({Action.REQUEST_DATE, Action.REQUEST_TIME})

_INPUT_ACTIONS = CLARIFICATION_ACTIONS | {Action.REQUEST_EVENT_SELECTION}

_RESULT_TYPES = {
    Action.EVENT_CREATED: "event_created",
    Action.EVENT_UPDATED: "event_updated",
    Action.EVENT_DELETED: "event_deleted",
    Action.SHOW_SCHEDULE: "schedule_data",
    Action.SHOW_EMPTY_SCHEDULE: "schedule_data",
    Action.SET_REMINDER: "reminder_suggestion",
    Action.ERROR: "error",
}


@dataclass
class ActionOutcome:
    """Reply text, action code and payload produced by one handler."""

    response: str
    action: Optional[Action] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.action is not Action.ERROR

    def as_result(self) -> Dict[str, Any]:
        """``actionResult`` shape returned on the fallback path."""
        if self.action in _INPUT_ACTIONS:
            kind = "user_input_required"
        else:
            kind = _RESULT_TYPES.get(self.action, "no_action") if self.action else "no_action"
        return {
            "type": kind,
            "success": self.succeeded,
            "action": self.action.value if self.action else None,
            "response": self.response,
            **self.data,
        }


def _valid_date(value: Any) -> bool:
    if not isinstance(value, str) or not _DATE_SHAPE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _valid_time(value: Any) -> bool:
    return isinstance(value, str) and bool(_TIME_SHAPE.match(value))


class ActionHandlers:
    """Calendar side effects behind the action codes.

    Parameters
    ----------
    calendar:
        Calendar store.
    clock:
        Wall clock, used for "today".
    audit:
        Optional JSONL audit trail of executed actions.
    """

    def __init__(
        self,
        calendar: CalendarStore,
        clock: Optional[Callable[[], datetime]] = None,
        audit: Optional[JsonlLogger] = None,
    ) -> None:
        self._calendar = calendar
        self._clock = clock or datetime.now
        self._audit = audit

    def today(self) -> date:
        return self._clock().date()

    async def _record(self, action: str, user_id: str, success: bool, source: str, **fields: Any) -> None:
        if self._audit is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self._audit.log_action(action, user_id, success, source=source, **fields),
            )
        except OSError:
            logger.warning("[actions] Audit log write failed for %s", action, exc_info=True)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def handle_create_event(
        self, user_id: str, details: Mapping[str, Any], source: str = "text"
    ) -> ActionOutcome:
        """Write one event from an entity bag or tool-call arguments.

        Accepts ``title, date, time, endTime, duration, description,
        location, eventType, participants, recurrence``.
        """
        title = str(details.get("title") or "").strip() or DEFAULT_TITLE
        event_date = details.get("date")
        event_time = details.get("time")
        duration = details.get("duration")
        try:
            duration = int(duration) if duration not in (None, "") else None
        except (TypeError, ValueError):
            duration = None
        if duration is not None and duration <= 0:
            duration = None
        all_day = is_all_day(duration) or bool(details.get("allDay"))

        if not _valid_date(event_date):
            return ActionOutcome(
                "What day would you like to schedule this event?",
                Action.REQUEST_DATE,
                {"entities": dict(details)},
            )
        if not all_day and not _valid_time(event_time):
            return ActionOutcome(
                "What time should the event start?",
                Action.REQUEST_TIME,
                {"entities": dict(details)},
            )

        description = str(details.get("description") or "")
        participants = [p for p in details.get("participants") or [] if p]
        if participants and not description:
            description = "With " + ", ".join(participants)
        recurrence = details.get("recurrence") or None
        end_time = details.get("endTime") or details.get("end_time")

        event = CalendarEvent(
            user_id=user_id,
            title=title,
            date=event_date,
            time=None if all_day else event_time,
            end_time=end_time if _valid_time(end_time) else None,
            duration=duration,
            description=description,
            type=details.get("eventType") or categorize_title(title).value,
            location=details.get("location"),
            all_day=all_day,
            recurring=bool(recurrence),
            recurring_type=recurrence.get("type") if isinstance(recurrence, Mapping) else None,
        )

        try:
            created = await self._calendar.create_event(event)
        except StoreError as exc:
            logger.exception("[actions] create_event failed for %s", user_id)
            await self._record("create_event", user_id, False, source, error=type(exc).__name__)
            return ActionOutcome(
                "I had trouble creating that event. Please try again.",
                Action.ERROR,
                {"error": "create_failed"},
            )

        if created.all_day:
            response = f'Perfect! I\'ve scheduled "{created.title}" for {long_date(created.date)} (all day).'
        else:
            response = (
                f'Perfect! I\'ve scheduled "{created.title}" for {long_date(created.date)} '
                f"at {twelve_hour(created.time)}."
            )
        if created.recurring and created.recurring_type:
            response += f" It repeats {created.recurring_type}."

        await self._record("create_event", user_id, True, source, result=created.id)
        logger.info("[actions] Created %s for %s on %s", created.id, user_id, created.date)
        return ActionOutcome(
            response,
            Action.EVENT_CREATED,
            {"event": created.to_dict(), "original": dict(details)},
        )

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def handle_query_events(
        self,
        user_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        source: str = "text",
    ) -> ActionOutcome:
        """Read events in ``[start_date, end_date]``; defaults to today."""
        start_date = start_date or self.today().isoformat()
        end_date = end_date or start_date
        if not _valid_date(start_date) or not _valid_date(end_date):
            return ActionOutcome("Which day should I check?", Action.REQUEST_DATE, {})
        if end_date < start_date:
            start_date, end_date = end_date, start_date

        try:
            events = await self._calendar.get_events_by_date_range(user_id, start_date, end_date)
        except StoreError as exc:
            logger.exception("[actions] query_events failed for %s", user_id)
            await self._record("query_events", user_id, False, source, error=type(exc).__name__)
            return ActionOutcome(
                "I had trouble checking your schedule. Please try again.",
                Action.ERROR,
                {"error": "query_failed"},
            )

        await self._record("query_events", user_id, True, source, result=len(events))
        data = {
            "events": [e.to_dict() for e in events],
            "startDate": start_date,
            "endDate": end_date,
        }
        if not events:
            return ActionOutcome(
                f"You have no events scheduled for {describe_range(start_date, end_date)}. "
                "Would you like to add something?",
                Action.SHOW_EMPTY_SCHEDULE,
                data,
            )
        return ActionOutcome(
            format_schedule(events, multi_day=start_date != end_date),
            Action.SHOW_SCHEDULE,
            data,
        )

    # ------------------------------------------------------------------
    # Lookup, update, delete
    # ------------------------------------------------------------------

    async def find_events(
        self,
        user_id: str,
        title: str,
        on_date: Optional[str] = None,
    ) -> List[CalendarEvent]:
        """Events whose title matches *title* (case-insensitive, either way round)."""
        if on_date and _valid_date(on_date):
            start, end = on_date, on_date
        else:
            start = self.today().isoformat()
            end = (self.today() + timedelta(days=SEARCH_WINDOW_DAYS)).isoformat()
        needle = title.strip().lower()
        events = await self._calendar.get_events_by_date_range(user_id, start, end)
        return [
            e for e in events
            if needle and (needle in e.title.lower() or e.title.lower() in needle)
        ]

    async def _resolve_event(self, user_id: str, data: Mapping[str, Any]) -> List[CalendarEvent]:
        event = data.get("event") or {}
        event_id = event.get("id") if isinstance(event, Mapping) else None
        if event_id:
            found = await self._calendar.get_event(user_id, event_id)
            return [found] if found else []
        title = data.get("title") or (event.get("title") if isinstance(event, Mapping) else None)
        if not title or title == DEFAULT_TITLE:
            return []
        return await self.find_events(user_id, title, data.get("date"))

    async def handle_delete_event(
        self, user_id: str, data: Mapping[str, Any], source: str = "text"
    ) -> ActionOutcome:
        try:
            matches = await self._resolve_event(user_id, data)
            if len(matches) != 1:
                return self.selection_outcome(matches, "remove")
            deleted = await self._calendar.delete_event(matches[0].id)
        except StoreError as exc:
            logger.exception("[actions] delete_event failed for %s", user_id)
            await self._record("delete_event", user_id, False, source, error=type(exc).__name__)
            return ActionOutcome(
                "I had trouble cancelling that event. Please try again.",
                Action.ERROR,
                {"error": "delete_failed"},
            )
        if deleted is None:
            return self.selection_outcome([], "remove")

        await self._record("delete_event", user_id, True, source, result=deleted.id)
        return ActionOutcome(
            f'Done. I\'ve cancelled "{deleted.title}" on {long_date(deleted.date)}.',
            Action.EVENT_DELETED,
            {"event": deleted.to_dict()},
        )

    async def handle_modify_event(
        self, user_id: str, data: Mapping[str, Any], source: str = "text"
    ) -> ActionOutcome:
        changes = dict(data.get("changes") or {})
        if "duration" in changes and is_all_day(changes["duration"]):
            changes["allDay"] = True
            changes.pop("time", None)
            changes.pop("endTime", None)
        try:
            matches = await self._resolve_event(user_id, data)
            if len(matches) != 1:
                return self.selection_outcome(matches, "change")
            updated = await self._calendar.update_event(matches[0].id, changes)
        except StoreError as exc:
            logger.exception("[actions] update_event failed for %s", user_id)
            await self._record("update_event", user_id, False, source, error=type(exc).__name__)
            return ActionOutcome(
                "I had trouble updating that event. Please try again.",
                Action.ERROR,
                {"error": "update_failed"},
            )
        if updated is None:
            return self.selection_outcome([], "change")

        await self._record("update_event", user_id, True, source, result=updated.id, params=changes)
        return ActionOutcome(
            f'Done. "{updated.title}" is now on {event_when(updated, with_date=True)}.',
            Action.EVENT_UPDATED,
            {"event": updated.to_dict(), "changes": changes},
        )

    @staticmethod
    def selection_outcome(candidates: List[CalendarEvent], verb: str) -> ActionOutcome:
        if verb == "remove":
            text = "I can help you cancel an event. Which event would you like to remove?"
        else:
            text = "I'd be happy to help you modify an event. Which event would you like to change?"
        return ActionOutcome(
            text,
            Action.REQUEST_EVENT_SELECTION,
            {"events": [c.to_dict() for c in candidates[:5]]},
        )

    # ------------------------------------------------------------------
    # Dispatch table
    # ------------------------------------------------------------------

    async def execute(
        self,
        action: Any,
        data: Optional[Mapping[str, Any]],
        user_id: str,
        source: str = "text",
    ) -> ActionOutcome:
        """Run the handler registered for *action*; unknown actions are no-ops."""
        code = Action.lookup(action)
        data = data or {}

        if code is Action.CONFIRM_CREATE_EVENT:
            details = data.get("event") if isinstance(data.get("event"), Mapping) else data
            return await self.handle_create_event(user_id, details, source)
        if code is Action.SHOW_SCHEDULE:
            return await self.handle_query_events(
                user_id, data.get("startDate"), data.get("endDate"), source
            )
        if code is Action.CONFIRM_DELETE_EVENT:
            return await self.handle_delete_event(user_id, data, source)
        if code is Action.MODIFY_EVENT:
            return await self.handle_modify_event(user_id, data, source)
        if code in _INPUT_ACTIONS or code is Action.SET_REMINDER:
            # Markers for the client; nothing is written.
            return ActionOutcome("", code, dict(data))

        logger.debug("[actions] No handler for %r; ignoring", action)
        return ActionOutcome("", None, {})
