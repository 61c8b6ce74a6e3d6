"""Shared fixtures: in-memory store, fixed clock, recording sink."""

from datetime import timedelta
from typing import Any

import pytest

from procura.clock import FixedClock
from procura.config import Settings
from procura.lifecycle import LifecycleEngine, OverrideOperations
from procura.notifications import EventKind, NotificationDispatcher, NotificationSink
from procura.ratings import MemoryRatings
from procura.store import MemoryStore

OWNER = "pm_1"


class RecordingSink(NotificationSink):
    """Remembers every notification; can be told to fail for some users."""

    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []
        self.broadcasts: list[tuple[str, str, dict]] = []
        self.failing_users: set[str] = set()

    async def notify_user(self, user_id: str, event_kind: EventKind, payload: dict[str, Any]) -> None:
        if user_id in self.failing_users:
            raise ConnectionError(f"cannot reach {user_id}")
        self.sent.append((user_id, EventKind(event_kind).value, payload))

    async def broadcast_to_role(self, role: str, event_kind: EventKind, payload: dict[str, Any]) -> None:
        self.broadcasts.append((role, EventKind(event_kind).value, payload))

    def events(self, kind: str) -> list[tuple[str, str, dict]]:
        return [s for s in self.sent if s[1] == kind]

    def recipients(self, kind: str) -> list[str]:
        return [s[0] for s in self.events(kind)]


@pytest.fixture
def settings():
    return Settings(
        store_backend="memory",
        notification_backend="log",
        scheduler_enabled=False,
        _env_file=None,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def ratings():
    return MemoryRatings()


@pytest.fixture
def engine(store, sink, ratings, clock, settings):
    return LifecycleEngine(
        store,
        NotificationDispatcher(sink),
        ratings=ratings,
        clock=clock,
        settings=settings,
    )


@pytest.fixture
def overrides(engine):
    return OverrideOperations(engine)


@pytest.fixture
def make_project(engine, clock):
    """Create a project, optionally moving it into bidding."""

    async def _make(open_bidding: bool = False, hours: int = 24, **kwargs):
        kwargs.setdefault("owner_id", OWNER)
        kwargs.setdefault("title", "Rooftop solar install")
        kwargs.setdefault("bidding_deadline", clock.now() + timedelta(hours=hours))
        kwargs.setdefault("delivery_date", clock.now() + timedelta(days=30))
        project = await engine.create_project(**kwargs)
        if open_bidding:
            project = (await engine.open_bidding(project.id)).project
        return project

    return _make


@pytest.fixture
def reviewing_project(make_project, engine, clock):
    """Project in reviewing with bids {bidder_3: 100, bidder_5: 90, bidder_7: 110}."""

    async def _make():
        project = await make_project(open_bidding=True)
        bids = {}
        for bidder, amount in (("bidder_3", 100.0), ("bidder_5", 90.0), ("bidder_7", 110.0)):
            bids[bidder] = await engine.submit_bid(project.id, bidder, amount)
        result = await engine.close_bidding(project.id)
        return result.project, bids

    return _make
