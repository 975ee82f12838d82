"""Pydantic models for the Daybook REST API.

Request bodies use the camelCase field names clients send.  Required
fields that carry a domain error message ("Message is required", invalid
feedback type) are optional here and validated by the services, so the
client sees the service's wording.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────
# Chat
# ─────────────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    """POST /api/assistant/chat request body."""

    message: Optional[str] = Field(default=None, max_length=4096, description="User message")
    sessionId: Optional[str] = Field(default=None, description="Conversation session id")

    model_config = {
        "json_schema_extra": {
            "examples": [{"message": "Schedule lunch with Alice tomorrow at 1pm", "sessionId": "web-1"}]
        }
    }


# ─────────────────────────────────────────────────────────────
# Memory
# ─────────────────────────────────────────────────────────────

class MemoryUpsert(BaseModel):
    """POST / PUT /api/assistant/memory body."""

    key: Optional[str] = Field(default=None, description="Memory key, unique per user")
    value: Any = Field(default=None, description="Any JSON value")
    category: Optional[str] = Field(default=None, description="Memory category")
    relevanceScore: Optional[float] = Field(default=None, ge=0.0, description="Relevance weight")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"key": "preferred_meeting_time", "value": "10:00", "category": "preferences"}
            ]
        }
    }


class MemoryDelete(BaseModel):
    """DELETE /api/assistant/memory body."""

    clearAll: bool = Field(default=False, description="Delete every memory of the user")
    category: Optional[str] = Field(default=None, description="Delete one category")
    key: Optional[str] = Field(default=None, description="Reserved: single-key deletion")


class MemoryImport(BaseModel):
    """POST /api/assistant/memory/import body (an export document)."""

    userId: Optional[str] = None
    exportDate: Optional[str] = None
    memories: List[Dict[str, Any]] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────
# Feedback
# ─────────────────────────────────────────────────────────────

class FeedbackRequest(BaseModel):
    """POST /api/assistant/feedback body."""

    conversationId: Optional[Any] = Field(default=None, description="Conversation the feedback is about")
    feedbackType: Optional[str] = Field(default=None, description="positive, negative or correction")
    feedbackText: Optional[str] = Field(default=None, max_length=4096)


class FeedbackResponse(BaseModel):
    success: bool = True
    feedbackId: int
    learningPoints: List[str] = Field(default_factory=list)
    message: str = "Feedback recorded"


# ─────────────────────────────────────────────────────────────
# Errors / health
# ─────────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error message")


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    uptime_seconds: float
    audio_enabled: bool
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
