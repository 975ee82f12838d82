"""SQLite-backed calendar and memory store.

Provides :class:`SQLiteStore`, implementing both :class:`CalendarStore` and
:class:`MemoryStore` over one database file.

Statements run on a small thread pool so the event loop never blocks on
disk; an ``RLock`` serialises access to the shared connection.

Usage::

    store = SQLiteStore(":memory:")                 # tests
    store = SQLiteStore.from_url("sqlite:///daybook.db")

    event = await store.create_event(CalendarEvent(...))
    events = await store.get_events_by_date_range("u1", "2024-03-11", "2024-03-17")
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from daybook.config import sqlite_path_from_url
from daybook.errors import ConfigurationError, StoreError
from daybook.store.base import CalendarStore, MemoryStore
from daybook.store.migrations import migrate
from daybook.store.models import (
    CalendarEvent,
    Conversation,
    FeedbackRecord,
    MemoryRecord,
    is_all_day,
    utcnow,
)

logger = logging.getLogger(__name__)

__all__ = ["SQLiteStore"]

T = TypeVar("T")

# Patchable event columns: wire/attribute name → column.
_EVENT_PATCH_COLUMNS = {
    "title": "title",
    "description": "description",
    "date": "date",
    "time": "time",
    "endTime": "end_time",
    "end_time": "end_time",
    "duration": "duration",
    "type": "type",
    "location": "location",
    "allDay": "all_day",
    "all_day": "all_day",
    "recurring": "recurring",
    "recurringType": "recurring_type",
    "recurring_type": "recurring_type",
}


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    return datetime.fromisoformat(value)


class SQLiteStore(CalendarStore, MemoryStore):
    """SQLite implementation of both store capability sets.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Use ``":memory:"`` for tests.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="daybook-store")
        self._conn: Optional[sqlite3.Connection] = None
        self._connect()

    @classmethod
    def from_url(cls, url: str) -> "SQLiteStore":
        """Open the store named by a ``DATABASE_URL``."""
        path = sqlite_path_from_url(url)
        if path is None:
            raise ConfigurationError(f"Unsupported DATABASE_URL scheme: {url.split('://', 1)[0]}")
        if path != ":memory:":
            Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return cls(path)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _connect(self) -> None:
        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,  # autocommit
        )
        if self._db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.row_factory = sqlite3.Row
        migrate(self._conn)
        logger.info("[store] SQLite store ready at %s", self._db_path)

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
        self._executor.shutdown(wait=False)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, functools.partial(fn, *args))
        except sqlite3.Error as exc:
            raise StoreError(f"{fn.__name__} failed: {exc}") from exc

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._conn is None:
            raise sqlite3.ProgrammingError("store is closed")
        return self._conn.execute(sql, params)

    # ------------------------------------------------------------------
    # Calendar events
    # ------------------------------------------------------------------

    def _create_event(self, event: CalendarEvent) -> CalendarEvent:
        with self._lock:
            self._execute(
                """
                INSERT INTO calendar_events
                    (id, user_id, title, description, date, time, end_time,
                     duration, type, location, all_day, recurring,
                     recurring_type, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.user_id,
                    event.title,
                    event.description or "",
                    event.date,
                    event.time,
                    event.end_time,
                    event.duration,
                    event.type,
                    event.location,
                    int(event.all_day),
                    int(event.recurring),
                    event.recurring_type,
                    _ts(event.created_at),
                    _ts(event.updated_at),
                ),
            )
        return event

    def _get_event(self, user_id: str, event_id: str) -> Optional[CalendarEvent]:
        with self._lock:
            row = self._execute(
                "SELECT * FROM calendar_events WHERE id = ? AND user_id = ?",
                (event_id, user_id),
            ).fetchone()
        return self._row_to_event(row) if row else None

    def _get_events_by_date_range(
        self, user_id: str, start_date: str, end_date: str
    ) -> List[CalendarEvent]:
        with self._lock:
            rows = self._execute(
                """
                SELECT * FROM calendar_events
                WHERE user_id = ? AND date >= ? AND date <= ?
                ORDER BY date ASC, time ASC
                """,
                (user_id, start_date, end_date),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def _update_event(self, event_id: str, patch: Dict[str, Any]) -> Optional[CalendarEvent]:
        assignments: Dict[str, Any] = {}
        for name, value in patch.items():
            column = _EVENT_PATCH_COLUMNS.get(name)
            if column is None:
                continue
            if column in ("all_day", "recurring"):
                value = int(bool(value))
            assignments[column] = value

        with self._lock:
            row = self._execute(
                "SELECT * FROM calendar_events WHERE id = ?", (event_id,)
            ).fetchone()
            if row is None:
                return None
            duration = assignments.get("duration", row["duration"])
            if is_all_day(duration):
                # A full-day duration beats any clock time in the patch.
                assignments["all_day"] = 1
            elif "duration" in assignments and "all_day" not in assignments:
                assignments["all_day"] = 0
            elif assignments.get("time") and not assignments.get("all_day"):
                assignments["all_day"] = 0
            if assignments.get("all_day"):
                assignments["time"] = None
                assignments["end_time"] = None
            if assignments:
                assignments["updated_at"] = _ts(utcnow())
                columns = ", ".join(f"{c} = ?" for c in assignments)
                self._execute(
                    f"UPDATE calendar_events SET {columns} WHERE id = ?",
                    (*assignments.values(), event_id),
                )
            row = self._execute(
                "SELECT * FROM calendar_events WHERE id = ?", (event_id,)
            ).fetchone()
        return self._row_to_event(row)

    def _delete_event(self, event_id: str) -> Optional[CalendarEvent]:
        with self._lock:
            row = self._execute(
                "SELECT * FROM calendar_events WHERE id = ?", (event_id,)
            ).fetchone()
            if row is None:
                return None
            self._execute("DELETE FROM calendar_events WHERE id = ?", (event_id,))
        return self._row_to_event(row)

    def _get_user_events(self, user_id: str, days_back: int, today: date) -> List[CalendarEvent]:
        cutoff = (today - timedelta(days=days_back)).isoformat()
        with self._lock:
            rows = self._execute(
                """
                SELECT * FROM calendar_events
                WHERE user_id = ? AND date >= ?
                ORDER BY date DESC, time DESC
                """,
                (user_id, cutoff),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    async def create_event(self, event: CalendarEvent) -> CalendarEvent:
        return await self._run(self._create_event, event)

    async def get_event(self, user_id: str, event_id: str) -> Optional[CalendarEvent]:
        return await self._run(self._get_event, user_id, event_id)

    async def get_events_by_date_range(
        self, user_id: str, start_date: str, end_date: str
    ) -> List[CalendarEvent]:
        return await self._run(self._get_events_by_date_range, user_id, start_date, end_date)

    async def update_event(self, event_id: str, patch: Dict[str, Any]) -> Optional[CalendarEvent]:
        return await self._run(self._update_event, event_id, patch)

    async def delete_event(self, event_id: str) -> Optional[CalendarEvent]:
        return await self._run(self._delete_event, event_id)

    async def get_user_events(
        self, user_id: str, days_back: int = 30, today: Optional[date] = None
    ) -> List[CalendarEvent]:
        return await self._run(self._get_user_events, user_id, days_back, today or date.today())

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def _upsert_memory(
        self,
        user_id: str,
        key: str,
        value: Any,
        category: str,
        relevance: float,
        now: datetime,
    ) -> MemoryRecord:
        stamp = _ts(now)
        with self._lock:
            self._execute(
                """
                INSERT INTO user_memories
                    (user_id, memory_key, memory_value, category,
                     relevance_score, created_at, last_accessed, access_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT (user_id, memory_key) DO UPDATE SET
                    memory_value    = excluded.memory_value,
                    category        = excluded.category,
                    relevance_score = excluded.relevance_score,
                    last_accessed   = excluded.last_accessed,
                    access_count    = user_memories.access_count + 1
                """,
                (user_id, key, json.dumps(value), category, float(relevance), stamp, stamp),
            )
            row = self._execute(
                "SELECT * FROM user_memories WHERE user_id = ? AND memory_key = ?",
                (user_id, key),
            ).fetchone()
        return self._row_to_memory(row)

    def _get_memory(self, user_id: str, key: str) -> Optional[MemoryRecord]:
        with self._lock:
            row = self._execute(
                "SELECT * FROM user_memories WHERE user_id = ? AND memory_key = ?",
                (user_id, key),
            ).fetchone()
        return self._row_to_memory(row) if row else None

    def _get_memories_by_category(self, user_id: str, category: str, limit: int) -> List[MemoryRecord]:
        with self._lock:
            rows = self._execute(
                """
                SELECT * FROM user_memories
                WHERE user_id = ? AND category = ?
                ORDER BY relevance_score DESC, last_accessed DESC
                LIMIT ?
                """,
                (user_id, category, limit),
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def _get_all_user_memories(self, user_id: str) -> List[MemoryRecord]:
        with self._lock:
            rows = self._execute(
                """
                SELECT * FROM user_memories
                WHERE user_id = ?
                ORDER BY category ASC, relevance_score DESC, last_accessed DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def _update_memory_access_stats(
        self, user_id: str, key: str, count: int, last_accessed: datetime
    ) -> None:
        with self._lock:
            self._execute(
                """
                UPDATE user_memories SET access_count = ?, last_accessed = ?
                WHERE user_id = ? AND memory_key = ?
                """,
                (count, _ts(last_accessed), user_id, key),
            )

    def _delete_old_memories(self, cutoff: datetime, category: str, min_relevance: float) -> int:
        with self._lock:
            cur = self._execute(
                """
                DELETE FROM user_memories
                WHERE created_at < ? AND category = ? AND relevance_score < ?
                """,
                (_ts(cutoff), category, min_relevance),
            )
            return cur.rowcount

    def _delete_user_memories(self, user_id: str, category: Optional[str]) -> int:
        with self._lock:
            if category:
                cur = self._execute(
                    "DELETE FROM user_memories WHERE user_id = ? AND category = ?",
                    (user_id, category),
                )
            else:
                cur = self._execute("DELETE FROM user_memories WHERE user_id = ?", (user_id,))
            return cur.rowcount

    async def upsert_memory(
        self,
        user_id: str,
        key: str,
        value: Any,
        category: str,
        relevance: float,
        now: Optional[datetime] = None,
    ) -> MemoryRecord:
        return await self._run(self._upsert_memory, user_id, key, value, category, relevance, now or utcnow())

    async def get_memory(self, user_id: str, key: str) -> Optional[MemoryRecord]:
        return await self._run(self._get_memory, user_id, key)

    async def get_memories_by_category(
        self, user_id: str, category: str, limit: int = 50
    ) -> List[MemoryRecord]:
        return await self._run(self._get_memories_by_category, user_id, category, limit)

    async def get_all_user_memories(self, user_id: str) -> List[MemoryRecord]:
        return await self._run(self._get_all_user_memories, user_id)

    async def update_memory_access_stats(
        self, user_id: str, key: str, count: int, last_accessed: datetime
    ) -> None:
        await self._run(self._update_memory_access_stats, user_id, key, count, last_accessed)

    async def delete_old_memories(self, cutoff: datetime, category: str, min_relevance: float) -> int:
        return await self._run(self._delete_old_memories, cutoff, category, min_relevance)

    async def delete_user_memories(self, user_id: str, category: Optional[str] = None) -> int:
        return await self._run(self._delete_user_memories, user_id, category)

    # ------------------------------------------------------------------
    # Conversations & feedback
    # ------------------------------------------------------------------

    def _store_conversation(self, conversation: Conversation) -> int:
        with self._lock:
            cur = self._execute(
                """
                INSERT INTO conversations
                    (user_id, session_id, user_message, assistant_response,
                     intent, entities, context_score, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.user_id,
                    conversation.session_id,
                    conversation.user_message,
                    conversation.assistant_response,
                    conversation.intent,
                    json.dumps(conversation.entities or {}),
                    conversation.context_score,
                    _ts(conversation.created_at),
                ),
            )
            conversation.id = cur.lastrowid
        return conversation.id

    def _get_conversation_history(
        self, user_id: str, session_id: Optional[str], limit: int
    ) -> List[Conversation]:
        sql = "SELECT * FROM conversations WHERE user_id = ?"
        params: list = [user_id]
        if session_id is not None:
            sql += " AND session_id = ?"
            params.append(session_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._execute(sql, tuple(params)).fetchall()
        return [self._row_to_conversation(r) for r in reversed(rows)]

    def _store_feedback(self, feedback: FeedbackRecord) -> int:
        with self._lock:
            cur = self._execute(
                """
                INSERT INTO feedback
                    (user_id, conversation_id, feedback_type, feedback_text, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    feedback.user_id,
                    feedback.conversation_id,
                    feedback.feedback_type,
                    feedback.feedback_text,
                    _ts(feedback.created_at),
                ),
            )
            feedback.id = cur.lastrowid
        return feedback.id

    def _get_feedback(self, user_id: str, limit: int) -> List[FeedbackRecord]:
        with self._lock:
            rows = self._execute(
                "SELECT * FROM feedback WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [
            FeedbackRecord(
                id=r["id"],
                user_id=r["user_id"],
                conversation_id=r["conversation_id"],
                feedback_type=r["feedback_type"],
                feedback_text=r["feedback_text"],
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]

    async def store_conversation(self, conversation: Conversation) -> int:
        return await self._run(self._store_conversation, conversation)

    async def get_conversation_history(
        self, user_id: str, session_id: Optional[str] = None, limit: int = 10
    ) -> List[Conversation]:
        return await self._run(self._get_conversation_history, user_id, session_id, limit)

    async def store_feedback(self, feedback: FeedbackRecord) -> int:
        return await self._run(self._store_feedback, feedback)

    async def get_feedback(self, user_id: str, limit: int = 50) -> List[FeedbackRecord]:
        return await self._run(self._get_feedback, user_id, limit)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> CalendarEvent:
        return CalendarEvent(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"] or "",
            date=row["date"],
            time=row["time"],
            end_time=row["end_time"],
            duration=row["duration"],
            type=row["type"],
            location=row["location"],
            all_day=bool(row["all_day"]),
            recurring=bool(row["recurring"]),
            recurring_type=row["recurring_type"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            user_id=row["user_id"],
            key=row["memory_key"],
            value=json.loads(row["memory_value"]),
            category=row["category"],
            relevance_score=row["relevance_score"],
            created_at=_parse_ts(row["created_at"]),
            last_accessed=_parse_ts(row["last_accessed"]),
            access_count=row["access_count"],
        )

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            session_id=row["session_id"],
            user_message=row["user_message"],
            assistant_response=row["assistant_response"],
            intent=row["intent"],
            entities=json.loads(row["entities"] or "{}"),
            context_score=row["context_score"],
            created_at=_parse_ts(row["created_at"]),
        )
