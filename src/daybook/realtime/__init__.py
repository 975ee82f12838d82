"""
Realtime audio bridge between audio clients and the speech model service.
"""

from daybook.realtime.bridge import RealtimeBridge
from daybook.realtime.ratelimit import SlidingWindowRateLimiter
from daybook.realtime.session import RealtimeSession, SessionState

__all__ = ["RealtimeBridge", "RealtimeSession", "SessionState", "SlidingWindowRateLimiter"]
