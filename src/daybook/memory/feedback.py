"""Feedback ingestion.

Stores per-message feedback and turns corrections into behavioural
memories with elevated relevance, so the next similar request starts from
what the user actually meant.

Correction learning points::

    time_preference_correction         "it should be 2:30 PM"
    date_preference_correction         "no, thursday"
    title_preference_correction        "call it Design Review"
    participant_preference_correction  "invite Carol and Dave"
    correction_pattern_<ms>            raw original/correction pair
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from daybook.errors import ValidationError
from daybook.memory.service import MemoryService
from daybook.nlu.slots import CALENDAR_WORDS, WEEKDAYS, extract_date, extract_time
from daybook.store.base import MemoryStore
from daybook.store.models import Conversation, FeedbackRecord, FeedbackType, MemoryCategory

logger = logging.getLogger(__name__)

__all__ = ["FeedbackIngestor", "FeedbackResult"]

CORRECTION_RELEVANCE = 0.9
STATS_RELEVANCE = 0.8
RECENT_FEEDBACK_RELEVANCE = 0.7
RECENT_FEEDBACK_SIZE = 20
CORRECTION_LOOKBACK = 50

_DAY_TOKEN = re.compile(rf"\b({'|'.join(WEEKDAYS)}|today|tomorrow)\b", re.I)
_TITLE_MARKER = re.compile(r"\b(?:title|called|named|call\s+it)\b\s*:?\s*[\"']?([^\"'.,!?]+)", re.I)
_CAPITALIZED = re.compile(r"\b[A-Z][a-z]+\b")
_NOT_PARTICIPANTS = CALENDAR_WORDS | frozenset({
    "I", "It", "It's", "The", "A", "An", "No", "Yes", "Not", "Should", "Please",
    "Actually", "That", "This", "Make", "Change", "Move", "Call", "Title",
    "Named", "Called", "Invite", "With", "And", "Sorry", "Oops", "Wrong",
})


@dataclass
class FeedbackResult:
    feedback_id: int
    feedback_type: str
    learning_points: List[str] = field(default_factory=list)


class FeedbackIngestor:
    """Persists feedback and learns from corrections.

    Parameters
    ----------
    store:
        Memory store (feedback rows and conversation lookup).
    memory:
        Memory service used for every derived memory write.
    clock:
        Wall clock; tests pin it.
    """

    def __init__(
        self,
        store: MemoryStore,
        memory: MemoryService,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._memory = memory
        self._clock = clock or datetime.now

    async def submit(
        self,
        user_id: str,
        conversation_id: Any,
        feedback_type: Any,
        feedback_text: Optional[str] = None,
    ) -> FeedbackResult:
        """Validate, store and learn from one piece of feedback."""
        if conversation_id in (None, "") or not feedback_type:
            raise ValidationError("conversationId and feedbackType are required")
        try:
            kind = FeedbackType(str(feedback_type).lower())
        except ValueError:
            raise ValidationError(
                "Invalid feedback type. Must be positive, negative, or correction"
            ) from None
        try:
            conv_id = int(conversation_id)
        except (TypeError, ValueError):
            raise ValidationError("conversationId must be an integer") from None

        text = (feedback_text or "").strip() or None
        feedback_id = await self._store.store_feedback(
            FeedbackRecord(
                user_id=user_id,
                conversation_id=conv_id,
                feedback_type=kind.value,
                feedback_text=text,
                created_at=self._clock(),
            )
        )

        learned: List[str] = []
        if kind is FeedbackType.CORRECTION and text:
            learned = await self._learn_from_correction(user_id, conv_id, text)

        await self._update_stats(user_id, kind, text, conv_id)
        logger.info(
            "[feedback] %s feedback from %s on conversation %s (%d learning points)",
            kind.value, user_id, conv_id, len(learned),
        )
        return FeedbackResult(feedback_id=feedback_id, feedback_type=kind.value, learning_points=learned)

    async def _find_conversation(self, user_id: str, conversation_id: int) -> Optional[Conversation]:
        history = await self._store.get_conversation_history(user_id, None, CORRECTION_LOOKBACK)
        for conv in history:
            if conv.id == conversation_id:
                return conv
        return None

    def derive_corrections(self, original: Conversation, correction: str) -> Dict[str, Dict[str, Any]]:
        """Candidate learning points found in the correction text."""
        now = self._clock()
        entities = original.entities or {}
        points: Dict[str, Dict[str, Any]] = {}

        time_match = extract_time(correction, now)
        if time_match is not None:
            points["time_preference_correction"] = {
                "original": entities.get("time"),
                "corrected": time_match.time,
                "context": original.user_message,
            }

        day = _DAY_TOKEN.search(correction)
        if day:
            points["date_preference_correction"] = {
                "original": entities.get("date"),
                "corrected": day.group(1).lower(),
                "resolved": extract_date(correction, now.date()),
                "context": original.user_message,
            }

        title = _TITLE_MARKER.search(correction)
        if title and title.group(1).strip():
            points["title_preference_correction"] = {
                "original": entities.get("title"),
                "corrected": title.group(1).strip(),
                "context": original.user_message,
            }

        names = []
        for word in _CAPITALIZED.findall(correction):
            if word not in _NOT_PARTICIPANTS and word not in names:
                names.append(word)
        if names:
            points["participant_preference_correction"] = {
                "original": entities.get("participants") or [],
                "corrected": names,
                "context": original.user_message,
            }
        return points

    async def _learn_from_correction(
        self, user_id: str, conversation_id: int, correction: str
    ) -> List[str]:
        original = await self._find_conversation(user_id, conversation_id)
        if original is None:
            logger.warning(
                "[feedback] Conversation %s not found for %s; correction not learned",
                conversation_id, user_id,
            )
            return []

        points = self.derive_corrections(original, correction)
        now = self._clock()
        points[f"correction_pattern_{int(now.timestamp() * 1000)}"] = {
            "original": original.user_message,
            "originalResponse": original.assistant_response,
            "correction": correction,
            "timestamp": now.isoformat(),
        }

        for key, value in points.items():
            await self._memory.store_memory(
                user_id, key, value, MemoryCategory.BEHAVIORAL.value, CORRECTION_RELEVANCE
            )
        return list(points)

    async def _update_stats(
        self, user_id: str, kind: FeedbackType, text: Optional[str], conversation_id: int
    ) -> None:
        stats = await self._memory.get_memory(user_id, "feedback_stats")
        if not isinstance(stats, dict):
            stats = {"positive": 0, "negative": 0, "correction": 0, "total": 0}
        stats = dict(stats)
        stats[kind.value] = int(stats.get(kind.value, 0)) + 1
        stats["total"] = int(stats.get("total", 0)) + 1
        await self._memory.store_memory(
            user_id, "feedback_stats", stats, MemoryCategory.BEHAVIORAL.value, STATS_RELEVANCE
        )

        recent = await self._memory.get_memory(user_id, "recent_feedback")
        recent = list(recent) if isinstance(recent, list) else []
        recent.append({
            "type": kind.value,
            "text": text,
            "conversationId": conversation_id,
            "timestamp": self._clock().isoformat(),
        })
        await self._memory.store_memory(
            user_id,
            "recent_feedback",
            recent[-RECENT_FEEDBACK_SIZE:],
            MemoryCategory.CONTEXTUAL.value,
            RECENT_FEEDBACK_RELEVANCE,
        )
