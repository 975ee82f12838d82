"""Tests for the text-turn dispatcher: fast path, pending questions, fallback."""
from __future__ import annotations

import asyncio

import pytest

from daybook.assistant.actions import Action, ActionHandlers
from daybook.assistant.dispatcher import Dispatcher, confirmation_answer
from daybook.assistant.fallback import HELP_TEXT
from daybook.errors import StoreError, ValidationError
from daybook.nlu import Entities, Intent, IntentParser, ParseResult
from daybook.store import CalendarEvent, SQLiteStore

USER = "u1"
SESSION = "s1"


async def _seed(store, title, day, hhmm) -> CalendarEvent:
    return await store.create_event(CalendarEvent(user_id=USER, title=title, date=day, time=hhmm))


class TestFastPath:
    @pytest.mark.asyncio
    async def test_create(self, dispatcher, store):
        reply = await dispatcher.process(USER, "Schedule lunch with Alice tomorrow at 1pm", SESSION)

        assert reply.source == "nlp"
        assert reply.action == "EVENT_CREATED"
        assert reply.confidence == 1.0
        assert reply.response == 'Perfect! I\'ve scheduled "Lunch" for Tuesday, March 12 at 1:00 PM.'
        events = await store.get_events_by_date_range(USER, "2024-03-12", "2024-03-12")
        assert [e.title for e in events] == ["Lunch"]
        assert events[0].description == "With Alice"
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_query_lists_events(self, dispatcher, store):
        await _seed(store, "Lunch", "2024-03-12", "13:00")
        reply = await dispatcher.process(USER, "What do I have tomorrow?", SESSION)
        assert reply.action == "SHOW_SCHEDULE"
        assert reply.response == "Here's your schedule:\n\n• Lunch at 1:00 PM"
        assert len(reply.data["events"]) == 1
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_query_empty_day(self, dispatcher):
        reply = await dispatcher.process(USER, "What do I have tomorrow?", SESSION)
        assert reply.action == "SHOW_EMPTY_SCHEDULE"
        assert reply.response == (
            "You have no events scheduled for Tuesday, March 12. Would you like to add something?"
        )
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, dispatcher):
        with pytest.raises(ValidationError):
            await dispatcher.process(USER, "   ", SESSION)
        with pytest.raises(ValidationError):
            await dispatcher.process(USER, None, SESSION)

    @pytest.mark.asyncio
    async def test_wire_shape(self, dispatcher):
        reply = await dispatcher.process(USER, "Schedule lunch with Alice tomorrow at 1pm", SESSION)
        out = reply.to_dict()
        assert set(out) == {"response", "action", "data", "intent", "entities", "source", "confidence"}
        assert out["entities"]["participants"] == ["Alice"]
        await dispatcher.drain()


class TestClarification:
    @pytest.mark.asyncio
    async def test_missing_date_then_answer(self, dispatcher, store):
        first = await dispatcher.process(USER, "Schedule a dentist appointment", SESSION)
        assert first.action == "REQUEST_DATE"
        assert first.response == "What day would you like to schedule this event?"
        assert dispatcher.pending(USER, SESSION).kind == "clarify"

        second = await dispatcher.process(USER, "tomorrow at 3pm", SESSION)
        assert second.action == "EVENT_CREATED"
        assert second.response == 'Perfect! I\'ve scheduled "Dentist" for Tuesday, March 12 at 3:00 PM.'
        [event] = await store.get_events_by_date_range(USER, "2024-03-12", "2024-03-12")
        assert event.type == "appointment"
        assert dispatcher.pending(USER, SESSION) is None
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_pending_is_per_session(self, dispatcher):
        await dispatcher.process(USER, "Schedule a dentist appointment", SESSION)
        assert dispatcher.pending(USER, "other") is None
        await dispatcher.drain()


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_delete_asks_then_deletes(self, dispatcher, store):
        event = await _seed(store, "Dentist", "2024-03-15", "10:00")

        ask = await dispatcher.process(USER, "Cancel the dentist on Friday", SESSION)
        assert ask.action == "CONFIRM_DELETE_EVENT"
        assert ask.response == 'Are you sure you want to cancel "Dentist" on Friday, March 15?'
        assert await store.get_event(USER, event.id) is not None

        done = await dispatcher.process(USER, "yes", SESSION)
        assert done.action == "EVENT_DELETED"
        assert done.response == 'Done. I\'ve cancelled "Dentist" on Friday, March 15.'
        assert await store.get_event(USER, event.id) is None
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_decline_keeps_event(self, dispatcher, store):
        event = await _seed(store, "Dentist", "2024-03-15", "10:00")
        await dispatcher.process(USER, "Cancel the dentist on Friday", SESSION)

        reply = await dispatcher.process(USER, "no", SESSION)
        assert reply.response == "Okay, I won't make any changes."
        assert reply.action is None
        assert await store.get_event(USER, event.id) is not None
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_modify_asks_then_updates(self, dispatcher, store):
        event = await _seed(store, "Standup", "2024-03-12", "09:30")

        ask = await dispatcher.process(USER, "Reschedule standup to 3pm", SESSION)
        assert ask.action == "MODIFY_EVENT"
        assert ask.response == 'I\'ll update "Standup" to 3:00 PM. Is this correct?'

        done = await dispatcher.process(USER, "yes please", SESSION)
        assert done.action == "EVENT_UPDATED"
        assert done.response == 'Done. "Standup" is now on Tuesday, March 12, 3:00 PM.'
        assert (await store.get_event(USER, event.id)).time == "15:00"
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_expired_confirmation_is_ignored(self, dispatcher, store, clock):
        event = await _seed(store, "Dentist", "2024-03-15", "10:00")
        await dispatcher.process(USER, "Cancel the dentist on Friday", SESSION)
        clock.advance(minutes=6)

        reply = await dispatcher.process(USER, "yes", SESSION)
        assert reply.action != "EVENT_DELETED"
        assert await store.get_event(USER, event.id) is not None
        await dispatcher.drain()

    def test_only_short_replies_count(self):
        assert confirmation_answer("yes") is True
        assert confirmation_answer("sure, go ahead") is True
        assert confirmation_answer("nope") is False
        assert confirmation_answer("yes but move it to friday afternoon instead") is None
        assert confirmation_answer("maybe") is None


class TestFallback:
    @pytest.mark.asyncio
    async def test_greeting(self, dispatcher):
        reply = await dispatcher.process(USER, "hello there", SESSION)
        assert reply.source == "ai"
        assert reply.action is None
        assert reply.response.startswith("Hi!")
        assert "actionResult" not in reply.to_dict()
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_greeting_uses_remembered_name(self, dispatcher, memory):
        await memory.store_memory(USER, "name", "Sam", "personal")
        reply = await dispatcher.process(USER, "hi", SESSION)
        assert reply.response.startswith("Hi Sam!")
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_gibberish_gets_help(self, dispatcher):
        reply = await dispatcher.process(USER, "banana", SESSION)
        assert reply.response == HELP_TEXT
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_low_confidence_create_asks_for_date(self, dispatcher):
        reply = await dispatcher.process(USER, "book it", SESSION)
        assert reply.source == "ai"
        assert reply.action == "REQUEST_DATE"
        assert reply.action_result == {
            "type": "user_input_required", "success": True, "action": "REQUEST_DATE",
        }
        assert dispatcher.pending(USER, SESSION).kind == "clarify"
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_week_query_runs_the_handler(self, dispatcher):
        reply = await dispatcher.process(USER, "what's on my calendar?", SESSION)
        assert reply.source == "ai"
        assert reply.action == "SHOW_EMPTY_SCHEDULE"
        assert reply.response == (
            "You have no events scheduled for Monday, March 11 to Sunday, March 17. "
            "Would you like to add something?"
        )
        assert reply.action_result["type"] == "schedule_data"
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_cancel_that_refers_to_last_event(self, dispatcher, store):
        created = await dispatcher.process(USER, "Schedule a dentist appointment tomorrow at 3pm", SESSION)
        assert created.action == "EVENT_CREATED"
        await dispatcher.drain()

        ask = await dispatcher.process(USER, "cancel that", SESSION)
        assert ask.source == "ai"
        assert ask.action == "CONFIRM_DELETE_EVENT"
        assert ask.response == 'Are you sure you want to cancel "Dentist"?'
        assert ask.action_result["type"] == "confirmation_required"

        done = await dispatcher.process(USER, "yes", SESSION)
        assert done.action == "EVENT_DELETED"
        assert await store.get_events_by_date_range(USER, "2024-03-12", "2024-03-12") == []
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_reminder(self, dispatcher):
        reply = await dispatcher.process(USER, "remind me about it", SESSION)
        assert reply.intent == "REMINDER"
        assert reply.action == "SET_REMINDER"
        assert "15 minutes before" in reply.response
        assert "I'll remind" not in reply.response
        assert "calendar app" in reply.response
        await dispatcher.drain()


class _ExplodingResponder:
    async def respond(self, request):
        raise RuntimeError("model offline")


class _FailingStore(SQLiteStore):
    async def create_event(self, event):
        raise StoreError("disk full")


class TestFailures:
    @pytest.mark.asyncio
    async def test_responder_failure_becomes_error_reply(self, actions, memory, clock):
        dispatcher = Dispatcher(actions, memory, responder=_ExplodingResponder(), clock=clock)
        reply = await dispatcher.process(USER, "hello there", SESSION)
        assert reply.action == "ERROR"
        assert reply.source == "ai"
        assert reply.response == "I had trouble processing your request. Please try again."
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_store_failure_on_create(self, memory, clock):
        failing = _FailingStore(":memory:")
        try:
            dispatcher = Dispatcher(ActionHandlers(failing, clock), memory, clock=clock)
            reply = await dispatcher.process(USER, "Schedule lunch with Alice tomorrow at 1pm", SESSION)
            assert reply.action == "ERROR"
            assert reply.response == "I had trouble creating that event. Please try again."
            await dispatcher.drain()
        finally:
            failing.close()

    @pytest.mark.asyncio
    async def test_concurrent_turns_in_one_session(self, dispatcher, store):
        replies = await asyncio.gather(
            dispatcher.process(USER, "Schedule lunch with Alice tomorrow at 1pm", SESSION),
            dispatcher.process(USER, "Schedule dinner with Bob tomorrow at 7pm", SESSION),
        )
        assert [r.action for r in replies] == ["EVENT_CREATED", "EVENT_CREATED"]
        events = await store.get_events_by_date_range(USER, "2024-03-12", "2024-03-12")
        assert [e.title for e in events] == ["Lunch", "Dinner"]
        await dispatcher.drain()
        history = await store.get_conversation_history(USER, SESSION, 10)
        assert len(history) == 2


class TestAllDayBoundary:
    @pytest.mark.asyncio
    async def test_eight_hours_is_all_day(self, dispatcher, store):
        reply = await dispatcher.process(USER, "Schedule offsite tomorrow for 8 hours", SESSION)
        assert reply.action == "EVENT_CREATED"
        [event] = await store.get_events_by_date_range(USER, "2024-03-12", "2024-03-12")
        assert event.all_day is True
        assert event.time is None
        assert event.duration == 480
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_one_minute_short_still_needs_a_time(self, dispatcher, store):
        reply = await dispatcher.process(USER, "Schedule offsite tomorrow for 479 minutes", SESSION)
        assert reply.action == "REQUEST_TIME"
        assert await store.get_events_by_date_range(USER, "2024-03-12", "2024-03-12") == []
        await dispatcher.drain()


class _FixedParser:
    """Always reads "tomorrow's schedule" at a set confidence."""

    def __init__(self, confidence: float) -> None:
        self.confidence = confidence

    def parse(self, text, now=None):
        return ParseResult(Intent.QUERY, Entities(date="2024-03-12"), self.confidence, text)


class TestConfidenceThreshold:
    @pytest.mark.asyncio
    async def test_exactly_threshold_goes_to_fallback(self, actions, memory, clock):
        dispatcher = Dispatcher(actions, memory, parser=_FixedParser(0.8), clock=clock)
        reply = await dispatcher.process(USER, "What do I have tomorrow?", SESSION)
        assert reply.source == "ai"
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_just_above_threshold_takes_fast_path(self, actions, memory, clock):
        dispatcher = Dispatcher(actions, memory, parser=_FixedParser(0.81), clock=clock)
        reply = await dispatcher.process(USER, "What do I have tomorrow?", SESSION)
        assert reply.source == "nlp"
        assert reply.action == "SHOW_EMPTY_SCHEDULE"
        await dispatcher.drain()

    def test_pronoun_delete_scores_at_threshold(self, clock):
        result = IntentParser(clock).parse("cancel that")
        assert result.intent is Intent.DELETE
        assert result.confidence == 0.8


class TestSessionState:
    @pytest.mark.asyncio
    async def test_locks_are_released_after_each_turn(self, dispatcher):
        for n in range(5):
            await dispatcher.process(USER, "hello", f"session-{n}")
        assert dispatcher._locks == {}
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_locks_are_released_after_concurrent_turns(self, dispatcher):
        await asyncio.gather(
            dispatcher.process(USER, "hello", SESSION),
            dispatcher.process(USER, "thanks", SESSION),
        )
        assert dispatcher._locks == {}
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_expired_questions_are_swept_by_any_turn(self, dispatcher, clock):
        await dispatcher.process(USER, "Schedule a dentist appointment", SESSION)
        assert dispatcher.pending(USER, SESSION) is not None

        clock.advance(minutes=6)
        await dispatcher.process("someone-else", "hello", "elsewhere")
        assert dispatcher.pending(USER, SESSION) is None
        await dispatcher.drain()

    @pytest.mark.asyncio
    async def test_fresh_questions_survive_the_sweep(self, dispatcher, clock):
        await dispatcher.process(USER, "Schedule a dentist appointment", SESSION)
        clock.advance(minutes=4)
        await dispatcher.process("someone-else", "hello", "elsewhere")
        assert dispatcher.pending(USER, SESSION) is not None
        await dispatcher.drain()
