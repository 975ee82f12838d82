"""Service wiring.

One :class:`ServiceContainer` per process holds the store and every
service built on it.  The FastAPI lifespan builds it (unless a test hands
one in), starts the memory sweeps, and tears everything down on exit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from daybook.assistant.actions import ActionHandlers
from daybook.assistant.dispatcher import Dispatcher
from daybook.assistant.fallback import ConversationalResponder
from daybook.config import Settings
from daybook.errors import ConfigurationError
from daybook.logs.logger import JsonlLogger
from daybook.memory.feedback import FeedbackIngestor
from daybook.memory.service import MemoryService
from daybook.realtime.bridge import RealtimeBridge
from daybook.realtime.upstream import Connector
from daybook.store.sqlite import SQLiteStore

logger = logging.getLogger(__name__)

__all__ = ["ServiceContainer"]


@dataclass
class ServiceContainer:
    settings: Settings
    store: SQLiteStore
    memory: MemoryService
    feedback: FeedbackIngestor
    actions: ActionHandlers
    dispatcher: Dispatcher
    bridge: RealtimeBridge

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        *,
        store: Optional[SQLiteStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        responder: Optional[ConversationalResponder] = None,
        connector: Optional[Connector] = None,
        **bridge_overrides: Any,
    ) -> "ServiceContainer":
        """Wire every service from *settings*.

        Parameters
        ----------
        settings:
            Defaults to :meth:`Settings.from_env`.
        store:
            Pre-built store; when omitted ``settings.database_url`` is
            required.
        clock:
            Wall clock shared by the parser, dispatcher and memory.
        responder:
            Conversational fallback; defaults to the rule-based one.
        connector:
            Upstream dialer for the audio bridge.

        Raises
        ------
        ConfigurationError
            No store was given and ``DATABASE_URL`` is unset.
        """
        settings = settings or Settings.from_env()
        if store is None:
            if not settings.database_url:
                raise ConfigurationError("DATABASE_URL is required")
            store = SQLiteStore.from_url(settings.database_url)

        audit = JsonlLogger(settings.audit_log_path) if settings.audit_log_path else None
        memory = MemoryService(
            store,
            store,
            clock=clock,
            cleanup_interval_s=settings.memory_cleanup_s,
            flush_interval_s=settings.cache_flush_s,
        )
        actions = ActionHandlers(store, clock=clock, audit=audit)
        dispatcher = Dispatcher(
            actions,
            memory,
            responder=responder,
            clock=clock,
            confidence_threshold=settings.confidence_threshold,
        )
        if connector is not None:
            bridge_overrides["connector"] = connector
        bridge = RealtimeBridge.from_settings(settings, actions, **bridge_overrides)

        logger.info(
            "[container] Services ready (audio=%s, audit=%s)",
            "on" if bridge.enabled else "off",
            settings.audit_log_path or "off",
        )
        return cls(
            settings=settings,
            store=store,
            memory=memory,
            feedback=FeedbackIngestor(store, memory, clock=clock),
            actions=actions,
            dispatcher=dispatcher,
            bridge=bridge,
        )

    def start(self) -> None:
        self.memory.start()

    async def stop(self) -> None:
        await self.bridge.stop()
        await self.memory.stop()
        await self.dispatcher.drain()
        self.store.close()
        logger.info("[container] Services stopped")
