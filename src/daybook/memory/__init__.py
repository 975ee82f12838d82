"""
Daybook memory system.

Per-user facts, conversation history, pattern mining and feedback learning
on top of the memory store.
"""

from daybook.memory.cache import TTLCache
from daybook.memory.feedback import FeedbackIngestor, FeedbackResult
from daybook.memory.service import MemoryService

__all__ = ["FeedbackIngestor", "FeedbackResult", "MemoryService", "TTLCache"]
