"""Memory service: durable per-user facts, conversation log, pattern mining.

Responsibilities
----------------
- upsert / read memories with a 10 minute read-through cache
- record conversations and extract facts from every turn
- mine recent events and messages for behavioural patterns
- serve recommendations and a compact user context to the dispatcher
- periodic sweeps: hourly cleanup of stale contextual memories and a
  15 minute cache flush

The :class:`MemoryStore` is the single source of truth.  Caches are only
written after the store write succeeded, and a miss is always safe.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from daybook.errors import NotFoundError, ValidationError
from daybook.memory import patterns
from daybook.memory.cache import TTLCache
from daybook.nlu.parser import DEFAULT_TITLE
from daybook.nlu.slots import categorize_title
from daybook.store.base import CalendarStore, MemoryStore
from daybook.store.models import Conversation, MemoryCategory, MemoryRecord

logger = logging.getLogger(__name__)

__all__ = ["MemoryService"]

MEMORY_CACHE_TTL_S = 10 * 60
CONVERSATION_CACHE_TTL_S = 30 * 60
SESSION_HISTORY_SIZE = 20
MEMORY_RETENTION = timedelta(days=90)
CLEANUP_MIN_RELEVANCE = 2.0

# Relevance for facts extracted from a single turn.
CONTACT_RELEVANCE = 0.6
LOCATION_RELEVANCE = 0.5
TIME_PREFERENCE_RELEVANCE = 0.7
EVENT_TYPE_RELEVANCE = 0.6

# Relevance for mined patterns.
PREFERRED_TIMES_RELEVANCE = 0.8
TYPICAL_DURATION_RELEVANCE = 0.7
FREQUENT_PARTICIPANTS_RELEVANCE = 0.6
LANGUAGE_PATTERNS_RELEVANCE = 0.5

_CONTEXT_CATEGORIES = (
    MemoryCategory.PREFERENCES.value,
    MemoryCategory.BEHAVIORAL.value,
    MemoryCategory.RELATIONSHIPS.value,
    MemoryCategory.PERSONAL.value,
)


class MemoryService:
    """Per-user memory over a :class:`MemoryStore`.

    Parameters
    ----------
    store:
        Memory store (memories, conversations, feedback).
    calendar:
        Calendar store, read by :meth:`learn_from_patterns`.
    clock:
        Wall clock; tests pin it.
    cleanup_interval_s / flush_interval_s:
        Periods of the background sweeps started by :meth:`start`.
    """

    def __init__(
        self,
        store: MemoryStore,
        calendar: CalendarStore,
        clock: Optional[Callable[[], datetime]] = None,
        cleanup_interval_s: float = 3600.0,
        flush_interval_s: float = 900.0,
    ) -> None:
        self._store = store
        self._calendar = calendar
        self._clock = clock or datetime.now
        self._cleanup_interval_s = cleanup_interval_s
        self._flush_interval_s = flush_interval_s

        def _seconds() -> float:
            return self._clock().timestamp()

        self._memory_cache: TTLCache[MemoryRecord] = TTLCache(MEMORY_CACHE_TTL_S, _seconds)
        self._context_cache: TTLCache[Dict[str, Any]] = TTLCache(MEMORY_CACHE_TTL_S, _seconds)
        self._conversation_cache: TTLCache[Deque[Conversation]] = TTLCache(
            CONVERSATION_CACHE_TTL_S, _seconds
        )
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the cleanup and cache-flush sweeps on the running loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._every(self._cleanup_interval_s, self.cleanup_memories, "cleanup")),
            asyncio.create_task(self._every(self._flush_interval_s, self._flush_async, "cache flush")),
        ]
        logger.info(
            "[memory] Sweeps started (cleanup=%ss, flush=%ss)",
            self._cleanup_interval_s,
            self._flush_interval_s,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _every(self, interval_s: float, job: Callable[[], Awaitable[Any]], name: str) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await job()
            except Exception:
                logger.exception("[memory] %s sweep failed", name)

    async def _flush_async(self) -> None:
        self.flush_cache()

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def store_memory(
        self,
        user_id: str,
        key: str,
        value: Any,
        category: str = MemoryCategory.CONTEXTUAL.value,
        relevance: float = 1.0,
    ) -> MemoryRecord:
        """Upsert a memory; repeated writes bump ``access_count``."""
        if not key:
            raise ValidationError("Memory key is required")
        if category not in MemoryCategory.values():
            raise ValidationError(f"Invalid category: {category}")
        record = await self._store.upsert_memory(
            user_id, key, value, category, float(relevance), now=self._clock()
        )
        self._memory_cache.set((user_id, key), record)
        self._context_cache.pop(user_id)
        return record

    async def get_memory_record(self, user_id: str, key: str) -> Optional[MemoryRecord]:
        cached = self._memory_cache.get((user_id, key))
        if cached is not None:
            return cached

        record = await self._store.get_memory(user_id, key)
        if record is None:
            return None
        record.access_count += 1
        record.last_accessed = self._clock()
        await self._store.update_memory_access_stats(
            user_id, key, record.access_count, record.last_accessed
        )
        self._memory_cache.set((user_id, key), record)
        return record

    async def get_memory(self, user_id: str, key: str) -> Any:
        """Value stored under *key*, or None."""
        record = await self.get_memory_record(user_id, key)
        return record.value if record is not None else None

    async def get_memories_by_category(
        self, user_id: str, category: str, limit: int = 50
    ) -> List[MemoryRecord]:
        if category not in MemoryCategory.values():
            raise ValidationError(f"Invalid category: {category}")
        return await self._store.get_memories_by_category(user_id, category, limit)

    async def summarize(self, user_id: str, per_category: int = 10) -> Dict[str, List[Dict[str, Any]]]:
        """Top memories for every category."""
        summary: Dict[str, List[Dict[str, Any]]] = {}
        for category in MemoryCategory.values():
            records = await self._store.get_memories_by_category(user_id, category, per_category)
            summary[category] = [r.to_dict() for r in records]
        return summary

    async def update_memory(
        self,
        user_id: str,
        key: str,
        value: Any,
        category: Optional[str] = None,
        relevance: Optional[float] = None,
    ) -> MemoryRecord:
        """Overwrite an existing memory; raises NotFoundError if absent."""
        existing = await self._store.get_memory(user_id, key)
        if existing is None:
            raise NotFoundError(f"Memory not found: {key}")
        return await self.store_memory(
            user_id,
            key,
            value,
            category or existing.category,
            existing.relevance_score if relevance is None else relevance,
        )

    async def clear_user_memories(self, user_id: str, category: Optional[str] = None) -> int:
        if category is not None and category not in MemoryCategory.values():
            raise ValidationError(f"Invalid category: {category}")
        deleted = await self._store.delete_user_memories(user_id, category)
        self._memory_cache.discard_where(lambda k: k[0] == user_id)
        self._context_cache.pop(user_id)
        logger.info("[memory] Cleared %d memories for %s (category=%s)", deleted, user_id, category)
        return deleted

    async def _increment_counter(
        self, user_id: str, key: str, category: str, relevance: float
    ) -> int:
        existing = await self._store.get_memory(user_id, key)
        current = existing.value if existing is not None and isinstance(existing.value, int) else 0
        await self.store_memory(user_id, key, current + 1, category, relevance)
        return current + 1

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def store_conversation(
        self,
        user_id: str,
        message: str,
        response: str,
        intent: str,
        entities: Optional[Mapping[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> int:
        """Record one turn, learn from it and return the conversation id."""
        entities = dict(entities or {})
        conversation = Conversation(
            user_id=user_id,
            session_id=session_id,
            user_message=message,
            assistant_response=response,
            intent=intent or "UNKNOWN",
            entities=entities,
            context_score=patterns.context_score(intent, entities, message),
            created_at=self._clock(),
        )
        conversation_id = await self._store.store_conversation(conversation)

        history = self._conversation_cache.get((user_id, session_id))
        if history is not None:
            history.append(conversation)
        if session_id is not None:
            self._conversation_cache.pop((user_id, None))

        await self.extract_and_store_context(user_id, entities)
        return conversation_id

    async def extract_and_store_context(self, user_id: str, entities: Mapping[str, Any]) -> None:
        """Turn the slots of one parsed turn into durable memories."""
        now = self._clock().isoformat(timespec="seconds")

        for name in entities.get("participants") or []:
            await self.store_memory(
                user_id,
                f"contact:{name.lower()}",
                {"name": name, "lastMentioned": now},
                MemoryCategory.RELATIONSHIPS.value,
                CONTACT_RELEVANCE,
            )

        location = entities.get("location")
        if location:
            await self.store_memory(
                user_id,
                f"location:{location.lower()}",
                {"location": location, "lastUsed": now},
                MemoryCategory.PREFERENCES.value,
                LOCATION_RELEVANCE,
            )

        bucket = patterns.time_bucket(entities["time"]) if entities.get("time") else None
        if bucket:
            await self._increment_counter(
                user_id,
                f"time_preference:{bucket}",
                MemoryCategory.BEHAVIORAL.value,
                TIME_PREFERENCE_RELEVANCE,
            )

        title = entities.get("title")
        if title and title != DEFAULT_TITLE:
            await self._increment_counter(
                user_id,
                f"event_type:{categorize_title(title).value}",
                MemoryCategory.BEHAVIORAL.value,
                EVENT_TYPE_RELEVANCE,
            )

    async def get_conversation_history(
        self, user_id: str, session_id: Optional[str] = None, limit: int = 10
    ) -> List[Conversation]:
        """Recent turns, oldest first."""
        if limit > SESSION_HISTORY_SIZE:
            return await self._store.get_conversation_history(user_id, session_id, limit)

        key: Tuple[str, Optional[str]] = (user_id, session_id)
        history = self._conversation_cache.get(key)
        if history is None:
            rows = await self._store.get_conversation_history(user_id, session_id, SESSION_HISTORY_SIZE)
            history = deque(rows, maxlen=SESSION_HISTORY_SIZE)
            self._conversation_cache.set(key, history)
        items = list(history)
        return items[-limit:] if limit > 0 else []

    # ------------------------------------------------------------------
    # Recommendations & context
    # ------------------------------------------------------------------

    async def get_contextual_recommendations(
        self, user_id: str, intent: str, entities: Mapping[str, Any]
    ) -> Dict[str, List[Any]]:
        recs: Dict[str, List[Any]] = {
            "suggestedTimes": [],
            "suggestedDurations": [],
            "suggestedParticipants": [],
        }
        if str(intent) != "CREATE":
            return recs

        if not entities.get("time"):
            times = await self.get_memory(user_id, "preferred_meeting_times")
            if times:
                recs["suggestedTimes"] = list(times)[:3]
        if not entities.get("duration"):
            duration = await self.get_memory(user_id, "typical_meeting_duration")
            if duration:
                recs["suggestedDurations"] = [duration]
        if not entities.get("participants"):
            people = await self.get_memory(user_id, "frequent_meeting_participants")
            if people:
                recs["suggestedParticipants"] = list(people)[:3]
        return recs

    async def get_user_context(self, user_id: str) -> Dict[str, Any]:
        """Top memories per category, as plain ``key → value`` maps."""
        cached = self._context_cache.get(user_id)
        if cached is not None:
            return cached

        context: Dict[str, Any] = {"userId": user_id}
        for category in _CONTEXT_CATEGORIES:
            records = await self._store.get_memories_by_category(user_id, category, 10)
            context[category] = {r.key: r.value for r in records}
        self._context_cache.set(user_id, context)
        return context

    # ------------------------------------------------------------------
    # Pattern mining
    # ------------------------------------------------------------------

    async def learn_from_patterns(self, user_id: str) -> Dict[str, Any]:
        """Mine the last 30 days of events and 50 messages; returns what was stored."""
        learned: Dict[str, Any] = {}
        events = await self._calendar.get_user_events(user_id, 30, today=self._clock().date())

        hours = patterns.top_hours(events)
        if hours:
            await self.store_memory(
                user_id, "preferred_meeting_times", hours,
                MemoryCategory.BEHAVIORAL.value, PREFERRED_TIMES_RELEVANCE,
            )
            learned["preferred_meeting_times"] = hours

        duration = patterns.most_common_duration(events)
        if duration:
            await self.store_memory(
                user_id, "typical_meeting_duration", duration,
                MemoryCategory.BEHAVIORAL.value, TYPICAL_DURATION_RELEVANCE,
            )
            learned["typical_meeting_duration"] = duration

        names = patterns.frequent_names(events)
        if names:
            await self.store_memory(
                user_id, "frequent_meeting_participants", names,
                MemoryCategory.RELATIONSHIPS.value, FREQUENT_PARTICIPANTS_RELEVANCE,
            )
            learned["frequent_meeting_participants"] = names

        conversations = await self._store.get_conversation_history(user_id, None, 50)
        vocabulary = patterns.language_patterns(conversations)
        if vocabulary:
            await self.store_memory(
                user_id, "language_patterns", vocabulary,
                MemoryCategory.BEHAVIORAL.value, LANGUAGE_PATTERNS_RELEVANCE,
            )
            learned["language_patterns"] = vocabulary

        logger.debug("[memory] Learned %s for %s", sorted(learned), user_id)
        return learned

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def cleanup_memories(self) -> int:
        """Drop stale, low-relevance contextual memories."""
        cutoff = self._clock() - MEMORY_RETENTION
        deleted = await self._store.delete_old_memories(
            cutoff, MemoryCategory.CONTEXTUAL.value, CLEANUP_MIN_RELEVANCE
        )
        self._memory_cache.evict_expired()
        self._context_cache.evict_expired()
        self._conversation_cache.evict_expired()
        if deleted:
            logger.info("[memory] Cleanup removed %d old memories", deleted)
        return deleted

    def flush_cache(self) -> None:
        self._memory_cache.clear()
        self._context_cache.clear()
        self._conversation_cache.clear()
        logger.debug("[memory] Caches flushed")

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def export_user_memories(self, user_id: str) -> Dict[str, Any]:
        records = await self._store.get_all_user_memories(user_id)
        return {
            "userId": user_id,
            "exportDate": self._clock().isoformat(),
            "memories": [
                {
                    "key": r.key,
                    "value": r.value,
                    "category": r.category,
                    "relevance": r.relevance_score,
                    "createdAt": r.created_at.isoformat(),
                }
                for r in records
            ],
        }

    async def import_user_memories(self, user_id: str, payload: Mapping[str, Any]) -> int:
        """Upsert every memory in an export payload; returns the count.

        The whole payload is checked first, so a bad item writes nothing.
        """
        memories = payload.get("memories") if isinstance(payload, Mapping) else None
        if not isinstance(memories, list):
            raise ValidationError("Import payload must contain a 'memories' list")

        rows = []
        for index, item in enumerate(memories):
            if not isinstance(item, Mapping) or not item.get("key") or "value" not in item:
                raise ValidationError("Every imported memory needs a key and a value")
            category = item.get("category") or MemoryCategory.CONTEXTUAL.value
            if category not in MemoryCategory.values():
                raise ValidationError(f"Invalid category: {category} (memory {index})")
            try:
                relevance = float(item.get("relevance", 1.0))
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid relevance for memory {index}") from None
            rows.append((item["key"], item["value"], category, relevance))

        for key, value, category, relevance in rows:
            await self.store_memory(user_id, key, value, category, relevance)
        logger.info("[memory] Imported %d memories for %s", len(rows), user_id)
        return len(rows)
