"""Persistent calendar + memory store.

:class:`CalendarStore` and :class:`MemoryStore` are the capability sets the
assistant core depends on; :class:`SQLiteStore` implements both.
"""

from daybook.store.base import CalendarStore, MemoryStore
from daybook.store.models import (
    CalendarEvent,
    Conversation,
    FeedbackRecord,
    FeedbackType,
    MemoryCategory,
    MemoryRecord,
)
from daybook.store.sqlite import SQLiteStore

__all__ = [
    "CalendarStore",
    "MemoryStore",
    "SQLiteStore",
    "CalendarEvent",
    "Conversation",
    "FeedbackRecord",
    "FeedbackType",
    "MemoryCategory",
    "MemoryRecord",
]
