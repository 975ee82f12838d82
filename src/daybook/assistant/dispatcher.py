"""Text-turn dispatcher.

Pipeline per turn::

    pending confirmation?  ──yes/no──▶  execute / drop
            │
            ▼
    parse ──▶ pending clarification?  ──merge──▶ fast path
            │
            ├── confidence > threshold and intent known ──▶ fast path (NLP)
            └── otherwise ──▶ conversational fallback (AI)

Turns of one ``(user, session)`` are serialized by a per-key lock, so a
session never observes its own turns out of order.  The conversation log
write is submitted before the lock is released and runs in the background;
a failed log write is logged and never reaches the user.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, TypeVar

from daybook.assistant.actions import (
    CLARIFICATION_ACTIONS,
    CONFIRMATION_ACTIONS,
    Action,
    ActionHandlers,
    ActionOutcome,
    is_all_day,
)
from daybook.assistant.fallback import (
    ConversationalResponder,
    FallbackReply,
    FallbackRequest,
    RuleBasedResponder,
    describe_changes,
)
from daybook.assistant.formatting import long_date
from daybook.errors import StoreError, ValidationError
from daybook.memory.service import MemoryService
from daybook.nlu.parser import DEFAULT_TITLE, IntentParser, score_confidence
from daybook.nlu.types import Entities, Intent, ParseResult
from daybook.store.models import CalendarEvent

logger = logging.getLogger(__name__)

__all__ = ["Dispatcher", "AssistantReply", "PendingAction"]

T = TypeVar("T")

PENDING_TTL = timedelta(minutes=5)

_AFFIRM = re.compile(
    r"^\W*(?:yes|yeah|yep|yup|sure|ok(?:ay)?|confirm(?:ed)?|correct|do\s+it|go\s+ahead|sounds\s+good)\b",
    re.I,
)
_DENY = re.compile(r"^\W*(?:no|nope|nah|cancel|never\s*mind|don'?t|stop)\b", re.I)
_SHORT_REPLY_WORDS = 4

SessionKey = Tuple[str, str]


@dataclass
class PendingAction:
    """A question the assistant asked and is waiting on."""

    kind: str                      # "confirm" | "clarify"
    action: Action
    data: Dict[str, Any]
    intent: str
    entities: Dict[str, Any]
    created_at: datetime

    def expired(self, now: datetime) -> bool:
        return now - self.created_at > PENDING_TTL


@dataclass
class AssistantReply:
    """Result of one turn, in both wire shapes (``nlp`` and ``ai``)."""

    response: str
    intent: str
    entities: Dict[str, Any] = field(default_factory=dict)
    action: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    source: str = "nlp"
    confidence: Optional[float] = None
    action_result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "response": self.response,
            "action": self.action,
            "data": self.data,
            "intent": self.intent,
            "entities": self.entities,
            "source": self.source,
        }
        if self.source == "nlp":
            out["confidence"] = self.confidence
        elif self.action_result is not None:
            out["actionResult"] = self.action_result
        return out


def _short(message: str) -> bool:
    return len(message.split()) <= _SHORT_REPLY_WORDS


def confirmation_answer(message: str) -> Optional[bool]:
    """True for a short "yes", False for a short "no", else None."""
    if not _short(message):
        return None
    if _AFFIRM.search(message):
        return True
    if _DENY.search(message):
        return False
    return None


class Dispatcher:
    """Routes text turns between the extractor and the fallback.

    Parameters
    ----------
    actions:
        Calendar action handlers (shared with the audio bridge).
    memory:
        Memory service: context, history, recommendations and the
        conversation log.
    parser:
        Intent extractor; defaults to an :class:`IntentParser` on *clock*.
    responder:
        Conversational fallback; defaults to :class:`RuleBasedResponder`.
    clock:
        Wall clock; tests pin it.
    confidence_threshold:
        Fast path requires confidence strictly above this value.
    """

    def __init__(
        self,
        actions: ActionHandlers,
        memory: MemoryService,
        parser: Optional[IntentParser] = None,
        responder: Optional[ConversationalResponder] = None,
        clock: Optional[Callable[[], datetime]] = None,
        confidence_threshold: float = 0.8,
    ) -> None:
        self._clock = clock or datetime.now
        self._actions = actions
        self._memory = memory
        self._parser = parser or IntentParser(self._clock)
        self._responder = responder or RuleBasedResponder()
        self._threshold = confidence_threshold
        self._locks: Dict[SessionKey, asyncio.Lock] = {}
        self._pending: Dict[SessionKey, PendingAction] = {}
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process(
        self, user_id: Optional[str], message: Any, session_id: Optional[str] = None
    ) -> AssistantReply:
        """Answer one text turn; raises ValidationError on an empty message."""
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message is required")
        user_id = user_id or "default"
        message = message.strip()
        key: SessionKey = (user_id, session_id or "")

        self._sweep_pending()
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                reply = await self._turn(user_id, message, session_id, key)
                self._submit(self._log_turn(user_id, message, reply, session_id))
                if reply.action == Action.EVENT_CREATED.value:
                    self._submit(self._learn(user_id))
        finally:
            self._release_lock(key, lock)
        return reply

    def pending(self, user_id: str, session_id: Optional[str] = None) -> Optional[PendingAction]:
        return self._pending.get((user_id, session_id or ""))

    async def drain(self) -> None:
        """Wait for every background log write submitted so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _release_lock(self, key: SessionKey, lock: asyncio.Lock) -> None:
        # Kept while another turn for the same session is queued on it.
        if lock.locked() or getattr(lock, "_waiters", None):
            return
        if self._locks.get(key) is lock:
            del self._locks[key]

    def _sweep_pending(self) -> None:
        now = self._clock()
        expired = [key for key, item in self._pending.items() if item.expired(now)]
        for key in expired:
            del self._pending[key]
        if expired:
            logger.debug("[dispatch] Dropped %d expired pending question(s)", len(expired))

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _turn(
        self, user_id: str, message: str, session_id: Optional[str], key: SessionKey
    ) -> AssistantReply:
        now = self._clock()
        pending = self._pending.pop(key, None)
        if pending is not None and pending.expired(now):
            logger.debug("[dispatch] Pending %s for %s expired", pending.action, key)
            pending = None

        if pending is not None and pending.kind == "confirm":
            answer = confirmation_answer(message)
            if answer is True:
                outcome = await self._actions.execute(pending.action, pending.data, user_id)
                return self._nlp_reply(
                    outcome, Intent.parse(pending.intent).value, pending.entities, 1.0, key
                )
            if answer is False:
                return AssistantReply(
                    response="Okay, I won't make any changes.",
                    intent=pending.intent,
                    entities=pending.entities,
                    confidence=1.0,
                )

        result = self._parser.parse(message, now=now)

        if pending is not None and pending.kind == "clarify":
            merged = self._merge_clarification(pending, result)
            if merged is not None:
                outcome = await self._fast_path(user_id, merged)
                return self._nlp_reply(
                    outcome, merged.intent.value, merged.entities.to_dict(), merged.confidence, key
                )

        if result.confidence > self._threshold and result.intent is not Intent.UNKNOWN:
            outcome = await self._fast_path(user_id, result)
            return self._nlp_reply(
                outcome, result.intent.value, result.entities.to_dict(), result.confidence, key
            )

        return await self._fallback(user_id, message, session_id, result, key)

    def _nlp_reply(
        self,
        outcome: ActionOutcome,
        intent: str,
        entities: Dict[str, Any],
        confidence: float,
        key: SessionKey,
    ) -> AssistantReply:
        self._remember_question(key, outcome.action, outcome.data, intent, entities)
        return AssistantReply(
            response=outcome.response,
            intent=intent,
            entities=entities,
            action=outcome.action.value if outcome.action else None,
            data=outcome.data,
            source="nlp",
            confidence=confidence,
        )

    def _remember_question(
        self,
        key: SessionKey,
        action: Optional[Action],
        data: Dict[str, Any],
        intent: str,
        entities: Dict[str, Any],
    ) -> None:
        if action in CONFIRMATION_ACTIONS:
            kind = "confirm"
        elif action in CLARIFICATION_ACTIONS:
            kind = "clarify"
        else:
            return
        self._pending[key] = PendingAction(kind, action, dict(data), intent, dict(entities), self._clock())

    # ------------------------------------------------------------------
    # Clarification merge
    # ------------------------------------------------------------------

    def _merge_clarification(self, pending: PendingAction, result: ParseResult) -> Optional[ParseResult]:
        """Fill the slot the assistant asked for from this turn's answer."""
        if result.intent not in (Intent.CREATE, Intent.UNKNOWN):
            return None
        answer = result.entities
        if pending.action is Action.REQUEST_DATE and not answer.date:
            return None
        if pending.action is Action.REQUEST_TIME and not (answer.time or is_all_day(answer.duration)):
            return None

        base = Entities.from_dict(pending.entities)
        for name in answer.present():
            value = getattr(answer, name)
            if name == "title":
                if value == DEFAULT_TITLE or (base.title and base.title != DEFAULT_TITLE):
                    continue
            elif name == "participants":
                value = base.participants + [
                    p for p in value if p.lower() not in {b.lower() for b in base.participants}
                ]
            setattr(base, name, value)
        if not base.title:
            base.title = DEFAULT_TITLE

        return ParseResult(
            intent=Intent.CREATE,
            entities=base,
            confidence=score_confidence(Intent.CREATE, base),
            raw_input=result.raw_input,
        )

    # ------------------------------------------------------------------
    # Fast path
    # ------------------------------------------------------------------

    async def _fast_path(self, user_id: str, result: ParseResult) -> ActionOutcome:
        entities = result.entities
        intent = result.intent

        if intent is Intent.CREATE:
            if not entities.date:
                return ActionOutcome("What day would you like to schedule this event?", Action.REQUEST_DATE, {})
            if not entities.time and not is_all_day(entities.duration):
                recs = await self._safe(
                    self._memory.get_contextual_recommendations(user_id, "CREATE", entities.to_dict()),
                    {},
                    "recommendations",
                )
                return ActionOutcome("What time should the event start?", Action.REQUEST_TIME, recs)
            return await self._actions.handle_create_event(user_id, entities.to_dict())

        if intent is Intent.QUERY:
            start = entities.date or self._clock().date().isoformat()
            return await self._actions.handle_query_events(user_id, start, start)

        if intent in (Intent.MODIFY, Intent.DELETE):
            return await self._locate_target(user_id, intent, entities)

        return ActionOutcome("", None, {})

    async def _locate_target(self, user_id: str, intent: Intent, entities: Entities) -> ActionOutcome:
        """Find the event a MODIFY/DELETE refers to and ask before touching it."""
        verb = "remove" if intent is Intent.DELETE else "change"
        title = entities.title
        if not title or title == DEFAULT_TITLE:
            return self._actions.selection_outcome([], verb)

        # A date on a MODIFY is the new date, not the one to search.
        on_date = entities.date if intent is Intent.DELETE else None
        try:
            matches = await self._actions.find_events(user_id, title, on_date)
        except StoreError:
            logger.exception("[dispatch] Event lookup failed for %s", user_id)
            return ActionOutcome(
                "I had trouble checking your schedule. Please try again.",
                Action.ERROR,
                {"error": "query_failed"},
            )

        if len(matches) != 1:
            return self._actions.selection_outcome(matches, verb)
        event = matches[0]

        if intent is Intent.DELETE:
            return ActionOutcome(
                f'Are you sure you want to cancel "{event.title}" on {long_date(event.date)}?',
                Action.CONFIRM_DELETE_EVENT,
                {"event": event.to_dict()},
            )

        changes = _changes_from(entities, event)
        if not changes:
            return ActionOutcome(
                f'What would you like to change about "{event.title}"?',
                None,
                {"event": event.to_dict()},
            )
        return ActionOutcome(
            f'I\'ll update "{event.title}" to {describe_changes(changes)}. Is this correct?',
            Action.MODIFY_EVENT,
            {"event": event.to_dict(), "changes": changes},
        )

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    async def _fallback(
        self,
        user_id: str,
        message: str,
        session_id: Optional[str],
        result: ParseResult,
        key: SessionKey,
    ) -> AssistantReply:
        entities = result.entities.to_dict()
        context = await self._safe(self._memory.get_user_context(user_id), {}, "user context")
        recent = await self._safe(
            self._memory.get_conversation_history(user_id, session_id, 10), [], "history"
        )
        recs = await self._safe(
            self._memory.get_contextual_recommendations(user_id, result.intent.value, entities),
            {},
            "recommendations",
        )
        request = FallbackRequest(
            user_id=user_id,
            message=message,
            parse=result,
            today=self._clock().date(),
            session_id=session_id,
            user_context=context,
            recent_conversations=recent,
            recommendations=recs,
        )

        try:
            reply = await self._responder.respond(request)
        except Exception:
            logger.exception("[dispatch] Conversational fallback failed for %s", user_id)
            reply = FallbackReply(
                "I had trouble processing your request. Please try again.",
                Action.ERROR,
                {},
                result.intent.value,
                entities,
            )

        action_result: Optional[Dict[str, Any]] = None
        response, action, data = reply.response, reply.action, reply.data

        if action in CONFIRMATION_ACTIONS or action in CLARIFICATION_ACTIONS:
            self._remember_question(key, action, data, reply.intent, reply.entities)
            action_result = {
                "type": "confirmation_required" if action in CONFIRMATION_ACTIONS else "user_input_required",
                "success": True,
                "action": action.value,
            }
        elif action is not None and action is not Action.ERROR:
            outcome = await self._actions.execute(action, data, user_id)
            action_result = outcome.as_result()
            # Handlers that produced their own text (schedule listings, errors)
            # replace the responder's preamble.
            if outcome.response and outcome.action not in (None, Action.REQUEST_EVENT_SELECTION):
                response, action, data = outcome.response, outcome.action, outcome.data

        return AssistantReply(
            response=response,
            intent=reply.intent,
            entities=reply.entities,
            action=action.value if action else None,
            data=data,
            source="ai",
            action_result=action_result,
        )

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _submit(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _log_turn(
        self, user_id: str, message: str, reply: AssistantReply, session_id: Optional[str]
    ) -> None:
        try:
            await self._memory.store_conversation(
                user_id, message, reply.response, reply.intent, reply.entities, session_id
            )
        except Exception:
            logger.exception("[dispatch] Failed to log conversation for %s", user_id)

    async def _learn(self, user_id: str) -> None:
        try:
            await self._memory.learn_from_patterns(user_id)
        except Exception:
            logger.exception("[dispatch] Pattern learning failed for %s", user_id)

    async def _safe(self, awaitable: Awaitable[T], default: T, what: str) -> T:
        try:
            return await awaitable
        except StoreError:
            logger.warning("[dispatch] Could not load %s; continuing without it", what, exc_info=True)
            return default


def _changes_from(entities: Entities, event: CalendarEvent) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if entities.date and entities.date != event.date:
        changes["date"] = entities.date
    if entities.time and entities.time != event.time:
        changes["time"] = entities.time
    if entities.end_time:
        changes["endTime"] = entities.end_time
    if entities.duration:
        changes["duration"] = entities.duration
    if entities.location and entities.location != event.location:
        changes["location"] = entities.location
    return changes
