"""Schema migrations for the daybook SQLite store.

Simple version-based migration system.  Each migration is a plain SQL
string keyed by its target version number.  :func:`migrate` applies any
outstanding migrations in order.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Dict

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------
# Migration registry: version → SQL
# -----------------------------------------------------------------------

MIGRATIONS: Dict[int, str] = {
    1: """
    -- v1: calendar, memories, conversations, feedback
    CREATE TABLE IF NOT EXISTS schema_version (
        version    INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS calendar_events (
        id             TEXT PRIMARY KEY,
        user_id        TEXT NOT NULL,
        title          TEXT NOT NULL,
        description    TEXT NOT NULL DEFAULT '',
        date           TEXT NOT NULL,
        time           TEXT,
        type           TEXT NOT NULL DEFAULT 'other',
        location       TEXT,
        all_day        INTEGER NOT NULL DEFAULT 0,
        recurring      INTEGER NOT NULL DEFAULT 0,
        recurring_type TEXT,
        created_at     TEXT NOT NULL,
        updated_at     TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS user_memories (
        user_id         TEXT NOT NULL,
        memory_key      TEXT NOT NULL,
        memory_value    TEXT NOT NULL,
        category        TEXT NOT NULL DEFAULT 'contextual',
        relevance_score REAL NOT NULL DEFAULT 1.0,
        created_at      TEXT NOT NULL,
        last_accessed   TEXT NOT NULL,
        access_count    INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (user_id, memory_key)
    );

    CREATE TABLE IF NOT EXISTS conversations (
        id                 INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id            TEXT NOT NULL,
        session_id         TEXT,
        user_message       TEXT NOT NULL,
        assistant_response TEXT NOT NULL,
        intent             TEXT NOT NULL DEFAULT 'UNKNOWN',
        entities           TEXT NOT NULL DEFAULT '{}',
        context_score      REAL NOT NULL DEFAULT 1.0,
        created_at         TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS feedback (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id         TEXT NOT NULL,
        conversation_id INTEGER,
        feedback_type   TEXT NOT NULL,
        feedback_text   TEXT,
        created_at      TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_events_user_date     ON calendar_events(user_id, date, time);
    CREATE INDEX IF NOT EXISTS idx_memories_category    ON user_memories(user_id, category);
    CREATE INDEX IF NOT EXISTS idx_conversations_user   ON conversations(user_id, session_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_feedback_user        ON feedback(user_id, created_at);
    """,
    2: """
    -- v2: end time and duration on events (pattern mining needs durations)
    ALTER TABLE calendar_events ADD COLUMN end_time TEXT;
    ALTER TABLE calendar_events ADD COLUMN duration INTEGER;
    """,
}

LATEST_VERSION = max(MIGRATIONS.keys())


def _current_version(conn: sqlite3.Connection) -> int:
    """Return the current schema version (0 if fresh database)."""
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row and row[0] is not None else 0
    except sqlite3.OperationalError:
        # schema_version table doesn't exist yet → version 0
        return 0


def migrate(conn: sqlite3.Connection) -> int:
    """Apply all outstanding migrations and return the new version.

    Parameters
    ----------
    conn:
        An open SQLite connection.

    Returns
    -------
    int
        The schema version after migration.
    """
    current = _current_version(conn)
    if current >= LATEST_VERSION:
        logger.debug("[migrate] Schema already at v%d, nothing to do.", current)
        return current

    for version in sorted(MIGRATIONS.keys()):
        if version <= current:
            continue
        logger.info("[migrate] Applying migration v%d …", version)
        conn.executescript(MIGRATIONS[version])
        conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, datetime.now().isoformat()),
        )
        conn.commit()
        logger.info("[migrate] Migration v%d applied.", version)

    return _current_version(conn)
