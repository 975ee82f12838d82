"""
Assistant core: text dispatcher, shared calendar actions and the
conversational fallback.
"""

from daybook.assistant.actions import Action, ActionHandlers, ActionOutcome
from daybook.assistant.dispatcher import AssistantReply, Dispatcher
from daybook.assistant.fallback import (
    ConversationalResponder,
    FallbackReply,
    FallbackRequest,
    RuleBasedResponder,
)

__all__ = [
    "Action",
    "ActionHandlers",
    "ActionOutcome",
    "AssistantReply",
    "Dispatcher",
    "ConversationalResponder",
    "FallbackReply",
    "FallbackRequest",
    "RuleBasedResponder",
]
