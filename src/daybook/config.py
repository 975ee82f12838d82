"""Process configuration.

Everything is read from the environment once at startup and handed to the
service container.  Config env vars::

    DATABASE_URL=sqlite:///var/lib/daybook/daybook.db
    SPEECH_API_KEY=...
    DAYBOOK_CONFIDENCE_THRESHOLD=0.8
    DAYBOOK_SESSION_WARNING_S=3000
    DAYBOOK_SESSION_RENEWAL_S=3300
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

__all__ = ["Settings", "DEFAULT_SPEECH_API_URL", "sqlite_path_from_url"]

DEFAULT_SPEECH_API_URL = "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview"

_DEFAULT_CORS_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://127.0.0.1",
    "http://127.0.0.1:3000",
]


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _str(name: str) -> Optional[str]:
    raw = os.getenv(name, "").strip()
    return raw or None


def sqlite_path_from_url(url: str) -> Optional[str]:
    """Return the SQLite file path encoded in *url*, or None for other schemes.

    Accepts ``sqlite:///relative.db``, ``sqlite:////abs/path.db``,
    ``sqlite:///:memory:`` and bare filesystem paths.
    """
    if url.startswith("sqlite:///"):
        return url[len("sqlite:///"):] or ":memory:"
    if url.startswith("sqlite://"):
        return ":memory:"
    if "://" in url:
        return None
    return url


@dataclass
class Settings:
    """Runtime settings.

    Attributes
    ----------
    database_url:
        Store location.  Required by :meth:`ServiceContainer.build`.
    speech_api_key:
        Credential for the speech model service.  Audio is disabled without it.
    confidence_threshold:
        The NLP fast path needs a confidence strictly above this.
    session_warning_s / session_renewal_s:
        Upstream session advisory and renewal timers.
    """

    database_url: Optional[str] = None
    speech_api_key: Optional[str] = None
    speech_api_url: str = DEFAULT_SPEECH_API_URL
    api_token: Optional[str] = None
    default_user_id: str = "default"
    confidence_threshold: float = 0.8
    max_connections_per_minute: int = 10
    max_audio_connections: int = 100
    session_warning_s: float = 3000.0
    session_renewal_s: float = 3300.0
    upstream_connect_timeout_s: float = 10.0
    reconnect_base_s: float = 1.0
    reconnect_max_attempts: int = 3
    memory_cleanup_s: float = 3600.0
    cache_flush_s: float = 900.0
    rate_limit_rpm: int = 60
    cors_origins: List[str] = field(default_factory=lambda: list(_DEFAULT_CORS_ORIGINS))
    audit_log_path: Optional[str] = None
    log_level: str = "INFO"

    @property
    def audio_enabled(self) -> bool:
        return bool(self.speech_api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        origins_raw = os.getenv("DAYBOOK_CORS_ORIGINS", "").strip()
        origins = (
            [o.strip() for o in origins_raw.split(",") if o.strip()]
            if origins_raw
            else list(_DEFAULT_CORS_ORIGINS)
        )
        return cls(
            database_url=_str("DATABASE_URL"),
            speech_api_key=_str("SPEECH_API_KEY"),
            speech_api_url=_str("SPEECH_API_URL") or DEFAULT_SPEECH_API_URL,
            api_token=_str("DAYBOOK_API_TOKEN"),
            default_user_id=_str("DAYBOOK_DEFAULT_USER") or "default",
            confidence_threshold=_float("DAYBOOK_CONFIDENCE_THRESHOLD", 0.8),
            max_connections_per_minute=_int("DAYBOOK_MAX_CONNECTIONS_PER_MINUTE", 10),
            max_audio_connections=_int("DAYBOOK_MAX_AUDIO_CONNECTIONS", 100),
            session_warning_s=_float("DAYBOOK_SESSION_WARNING_S", 3000.0),
            session_renewal_s=_float("DAYBOOK_SESSION_RENEWAL_S", 3300.0),
            upstream_connect_timeout_s=_float("DAYBOOK_UPSTREAM_CONNECT_TIMEOUT_S", 10.0),
            reconnect_base_s=_float("DAYBOOK_RECONNECT_BASE_S", 1.0),
            reconnect_max_attempts=_int("DAYBOOK_RECONNECT_MAX_ATTEMPTS", 3),
            memory_cleanup_s=_float("DAYBOOK_MEMORY_CLEANUP_S", 3600.0),
            cache_flush_s=_float("DAYBOOK_CACHE_FLUSH_S", 900.0),
            rate_limit_rpm=_int("DAYBOOK_RATE_LIMIT_RPM", 60),
            cors_origins=origins,
            audit_log_path=_str("DAYBOOK_AUDIT_LOG"),
            log_level=(_str("DAYBOOK_LOG_LEVEL") or "INFO").upper(),
        )
