"""Daybook — calendar assistant core.

Natural-language scheduling over HTTP and a realtime voice channel:

- ``daybook.nlu``        deterministic intent/entity extraction
- ``daybook.assistant``  dispatcher, shared action handlers, fallback responder
- ``daybook.memory``     per-user memories, pattern mining, feedback learning
- ``daybook.realtime``   audio session bridge to the speech model service
- ``daybook.store``      SQLite calendar + memory store
- ``daybook.api``        FastAPI application
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
