# SPDX-License-Identifier: MIT
"""
Deterministic natural-language understanding for scheduling requests.

Usage:
    from daybook.nlu import parse

    result = parse("Schedule lunch with Alice tomorrow at 1pm")
    result.intent            # Intent.CREATE
    result.entities.to_dict()
"""

from daybook.nlu.parser import DEFAULT_TITLE, IntentParser, parse
from daybook.nlu.types import Entities, EventType, Intent, ParseResult, Priority, Recurrence

__all__ = [
    "DEFAULT_TITLE",
    "IntentParser",
    "parse",
    "Entities",
    "EventType",
    "Intent",
    "ParseResult",
    "Priority",
    "Recurrence",
]
