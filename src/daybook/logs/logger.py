from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


@dataclass
class JsonlLogger:
    """Append-only JSONL audit trail of executed calendar actions."""

    path: str
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _append(self, record: dict[str, Any]) -> None:
        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        with self._lock:
            with p.open("a", encoding="utf-8") as f:
                f.write(line)

    def log_action(
        self,
        action: str,
        user_id: str,
        success: bool,
        source: str = "text",
        error: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        result: Any = None,
        **extra_fields: Any,
    ) -> None:
        """Record one calendar side effect.

        Args:
            action: Action handler name (create_event, query_events, ...)
            user_id: Owner of the calendar
            success: Whether the store call succeeded
            source: Channel that triggered it (text or audio)
            error: Error class name if it failed
            params: Handler parameters
            result: Handler result (truncated)
            **extra_fields: Additional audit fields
        """
        record: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "event_type": "calendar_action",
            "action": action,
            "user_id": user_id,
            "success": success,
            "source": source,
        }
        if error:
            record["error"] = error
        if params:
            record["params"] = params
        if result is not None:
            result_str = str(result)
            record["result"] = result_str[:500] + "..." if len(result_str) > 500 else result_str
        record.update(extra_fields)
        self._append(record)
