"""Store capability sets consumed by the assistant core.

Every method is a coroutine: store I/O is a suspension point for the
caller.  Implementations raise :class:`daybook.errors.StoreError` on
backend failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from daybook.store.models import (
    CalendarEvent,
    Conversation,
    FeedbackRecord,
    MemoryRecord,
)

__all__ = ["CalendarStore", "MemoryStore"]


class CalendarStore(ABC):
    """CRUD over calendar events plus range queries."""

    @abstractmethod
    async def create_event(self, event: CalendarEvent) -> CalendarEvent:
        ...

    @abstractmethod
    async def get_event(self, user_id: str, event_id: str) -> Optional[CalendarEvent]:
        ...

    @abstractmethod
    async def get_events_by_date_range(
        self, user_id: str, start_date: str, end_date: str
    ) -> List[CalendarEvent]:
        """Events with ``start_date <= date <= end_date`` ordered by (date, time)."""

    @abstractmethod
    async def update_event(self, event_id: str, patch: Dict[str, Any]) -> Optional[CalendarEvent]:
        ...

    @abstractmethod
    async def delete_event(self, event_id: str) -> Optional[CalendarEvent]:
        ...

    @abstractmethod
    async def get_user_events(
        self, user_id: str, days_back: int = 30, today: Optional[date] = None
    ) -> List[CalendarEvent]:
        """Events dated within the last *days_back* days (or later), newest first."""


class MemoryStore(ABC):
    """Per-user memories, conversations and feedback."""

    @abstractmethod
    async def upsert_memory(
        self,
        user_id: str,
        key: str,
        value: Any,
        category: str,
        relevance: float,
        now: Optional[datetime] = None,
    ) -> MemoryRecord:
        """Insert or update; an update bumps ``access_count`` and ``last_accessed``."""

    @abstractmethod
    async def get_memory(self, user_id: str, key: str) -> Optional[MemoryRecord]:
        ...

    @abstractmethod
    async def get_memories_by_category(
        self, user_id: str, category: str, limit: int = 50
    ) -> List[MemoryRecord]:
        """Ordered by relevance desc, then last access desc."""

    @abstractmethod
    async def get_all_user_memories(self, user_id: str) -> List[MemoryRecord]:
        ...

    @abstractmethod
    async def update_memory_access_stats(
        self, user_id: str, key: str, count: int, last_accessed: datetime
    ) -> None:
        ...

    @abstractmethod
    async def delete_old_memories(
        self, cutoff: datetime, category: str, min_relevance: float
    ) -> int:
        """Delete memories created before *cutoff* in *category* below *min_relevance*."""

    @abstractmethod
    async def delete_user_memories(self, user_id: str, category: Optional[str] = None) -> int:
        ...

    @abstractmethod
    async def store_conversation(self, conversation: Conversation) -> int:
        """Append a conversation and return its id."""

    @abstractmethod
    async def get_conversation_history(
        self, user_id: str, session_id: Optional[str] = None, limit: int = 10
    ) -> List[Conversation]:
        """Most recent *limit* turns in chronological order (oldest first)."""

    @abstractmethod
    async def store_feedback(self, feedback: FeedbackRecord) -> int:
        ...

    @abstractmethod
    async def get_feedback(self, user_id: str, limit: int = 50) -> List[FeedbackRecord]:
        ...
