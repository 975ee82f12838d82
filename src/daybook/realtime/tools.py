"""Default realtime session configuration and calendar tool schema."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

__all__ = [
    "CREATE_EVENT_TOOL",
    "QUERY_EVENTS_TOOL",
    "SUPPORTED_AUDIO_FORMATS",
    "default_session_config",
    "merge_session_config",
]

SUPPORTED_AUDIO_FORMATS = ["pcm16", "g711_ulaw", "g711_alaw"]

CREATE_EVENT_TOOL = "create_calendar_event"
QUERY_EVENTS_TOOL = "query_calendar_events"

INSTRUCTIONS = (
    "You are a helpful calendar assistant. Help users schedule, modify, and query "
    "their calendar events using natural conversation. Dates are YYYY-MM-DD and "
    "times are 24-hour HH:MM."
)

_TOOLS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": CREATE_EVENT_TOOL,
        "description": "Create a new calendar event",
        "parameters": {
            "type": "object",
            "properties": {
                "title": {"type": "string"},
                "date": {"type": "string", "description": "YYYY-MM-DD"},
                "time": {"type": "string", "description": "HH:MM, 24-hour"},
                "duration": {"type": "number", "description": "Minutes"},
                "description": {"type": "string"},
            },
            "required": ["title", "date", "time"],
        },
    },
    {
        "type": "function",
        "name": QUERY_EVENTS_TOOL,
        "description": "Query calendar events for a date range",
        "parameters": {
            "type": "object",
            "properties": {
                "start_date": {"type": "string", "description": "YYYY-MM-DD"},
                "end_date": {"type": "string", "description": "YYYY-MM-DD"},
            },
            "required": ["start_date"],
        },
    },
]

_DEFAULT_CONFIG: Dict[str, Any] = {
    "modalities": ["text", "audio"],
    "instructions": INSTRUCTIONS,
    "voice": "alloy",
    "input_audio_format": "pcm16",
    "output_audio_format": "pcm16",
    "input_audio_transcription": {"model": "whisper-1"},
    "turn_detection": {
        "type": "server_vad",
        "threshold": 0.5,
        "prefix_padding_ms": 300,
        "silence_duration_ms": 200,
    },
    "tools": _TOOLS,
}


def default_session_config() -> Dict[str, Any]:
    return copy.deepcopy(_DEFAULT_CONFIG)


def merge_session_config(overrides: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Default config with client overrides applied key by key (client wins)."""
    config = default_session_config()
    if overrides:
        config.update(copy.deepcopy(dict(overrides)))
    return config
