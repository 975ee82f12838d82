from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from daybook.assistant.actions import ActionHandlers
from daybook.assistant.dispatcher import Dispatcher
from daybook.memory.feedback import FeedbackIngestor
from daybook.memory.service import MemoryService
from daybook.store.sqlite import SQLiteStore

# Monday
NOW = datetime(2024, 3, 11, 9, 0)


class FakeClock:
    """Wall clock pinned to NOW; tests move it with ``advance``."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store():
    db = SQLiteStore(":memory:")
    yield db
    db.close()


@pytest.fixture
def memory(store, clock) -> MemoryService:
    return MemoryService(store, store, clock)


@pytest.fixture
def actions(store, clock) -> ActionHandlers:
    return ActionHandlers(store, clock)


@pytest.fixture
def dispatcher(actions, memory, clock) -> Dispatcher:
    return Dispatcher(actions, memory, clock=clock)


@pytest.fixture
def feedback(store, memory, clock) -> FeedbackIngestor:
    return FeedbackIngestor(store, memory, clock)
