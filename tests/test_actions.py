"""Tests for the calendar action handlers shared by text and audio."""
from __future__ import annotations

import pytest

from daybook.assistant.actions import ALL_DAY_MINUTES, Action


async def _standup(actions):
    outcome = await actions.handle_create_event(
        "u1", {"title": "Standup", "date": "2024-03-12", "time": "09:30"}
    )
    assert outcome.action is Action.EVENT_CREATED
    return outcome


class TestModifyEvent:
    @pytest.mark.asyncio
    async def test_full_day_duration_makes_event_all_day(self, actions, store):
        await _standup(actions)

        outcome = await actions.handle_modify_event(
            "u1", {"title": "Standup", "changes": {"time": "09:00", "duration": ALL_DAY_MINUTES}}
        )

        assert outcome.action is Action.EVENT_UPDATED
        assert outcome.data["event"]["allDay"] is True
        assert outcome.data["event"]["time"] is None
        [event] = await store.get_events_by_date_range("u1", "2024-03-12", "2024-03-12")
        assert event.all_day is True
        assert event.time is None
        assert event.duration == ALL_DAY_MINUTES

    @pytest.mark.asyncio
    async def test_shorter_duration_keeps_clock_time(self, actions, store):
        await _standup(actions)

        outcome = await actions.handle_modify_event(
            "u1", {"title": "Standup", "changes": {"time": "09:00", "duration": ALL_DAY_MINUTES - 1}}
        )

        assert outcome.action is Action.EVENT_UPDATED
        [event] = await store.get_events_by_date_range("u1", "2024-03-12", "2024-03-12")
        assert event.all_day is False
        assert event.time == "09:00"
        assert event.duration == ALL_DAY_MINUTES - 1

    @pytest.mark.asyncio
    async def test_unknown_title_asks_which_event(self, actions):
        outcome = await actions.handle_modify_event("u1", {"title": "Retro", "changes": {"time": "10:00"}})
        assert outcome.action is Action.REQUEST_EVENT_SELECTION
        assert outcome.data == {"events": []}


class TestReminderSuggestion:
    @pytest.mark.asyncio
    async def test_reminder_is_a_marker_only(self, actions, store):
        outcome = await actions.execute(Action.SET_REMINDER, {"title": "Standup"}, "u1")

        assert outcome.action is Action.SET_REMINDER
        assert outcome.response == ""
        result = outcome.as_result()
        assert result["type"] == "reminder_suggestion"
        assert result["success"] is True
        assert await store.get_user_events("u1") == []
