"""
Tests for the MongoDB store against in-process fake collections.

Tests cover:
1. Conditional writes put the expected status in the update filter
2. Duplicate key errors surface as UniqueViolation
3. Cascades roll back when the guarded write matches nothing
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from pymongo.errors import DuplicateKeyError

from procura.config import Settings
from procura.models import Bid, BidStatus, Project, ProjectStatus
from procura.store import UniqueViolation
from procura.store.mongo import BIDS_COLLECTION, PROJECTS_COLLECTION, MongoStore

NOW = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


class FakeCollection:
    """Records writes; ``matched`` controls what update_one reports."""

    def __init__(self):
        self.docs: list[dict] = []
        self.updates: list[tuple[dict, dict]] = []
        self.matched = 1
        self.insert_error = None

    async def insert_one(self, doc, session=None):
        if self.insert_error is not None:
            raise self.insert_error
        self.docs.append(dict(doc))

    async def find_one(self, query, session=None):
        for doc in self.docs:
            if all(doc.get(k) == v for k, v in query.items()):
                return {"_id": "oid", **doc}
        return None

    async def update_one(self, query, update, session=None):
        self.updates.append((query, update))
        return SimpleNamespace(matched_count=self.matched)

    async def update_many(self, query, update, session=None):
        self.updates.append((query, update))
        return SimpleNamespace(matched_count=0)


class FakeSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def with_transaction(self, callback):
        return await callback(self)


class FakeClient:
    def __init__(self):
        self.collections = {PROJECTS_COLLECTION: FakeCollection(), BIDS_COLLECTION: FakeCollection()}

    def __getitem__(self, database):
        # The database is a mapping of collection name to collection.
        return self.collections

    async def start_session(self):
        return FakeSession()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def mongo(client):
    return MongoStore(client=client, settings=Settings(mongodb_database="procura_test", _env_file=None))


def projects(client) -> FakeCollection:
    return client.collections[PROJECTS_COLLECTION]


def bids(client) -> FakeCollection:
    return client.collections[BIDS_COLLECTION]


# =============================================================================
# Conditional Writes
# =============================================================================


async def test_conditional_update_filters_on_single_status(mongo, client):
    changed = await mongo.conditional_update_project_status(
        "proj_1", ProjectStatus.BIDDING, {"status": ProjectStatus.REVIEWING, "updated_at": NOW}
    )

    assert changed == 1
    query, update = projects(client).updates[0]
    assert query == {"id": "proj_1", "status": "bidding"}
    assert update == {"$set": {"status": "reviewing", "updated_at": NOW}}


async def test_conditional_update_filters_on_status_set(mongo, client):
    projects(client).matched = 0

    changed = await mongo.conditional_update_project_status(
        "proj_1", [ProjectStatus.DRAFT, ProjectStatus.BIDDING], {"status": ProjectStatus.CANCELLED}
    )

    assert changed == 0
    query, _ = projects(client).updates[0]
    assert query == {"id": "proj_1", "status": {"$in": ["draft", "bidding"]}}


async def test_conditional_bid_update_filters_on_status(mongo, client):
    await mongo.conditional_update_bid("bid_1", BidStatus.PENDING, {"status": BidStatus.WITHDRAWN})

    query, update = bids(client).updates[0]
    assert query == {"id": "bid_1", "status": "pending"}
    assert update == {"$set": {"status": "withdrawn"}}


# =============================================================================
# Inserts and Reads
# =============================================================================


async def test_duplicate_bid_key_is_unique_violation(mongo, client):
    bids(client).insert_error = DuplicateKeyError("E11000 duplicate key error")
    bid = Bid(id="bid_2", project_id="proj_1", bidder_id="bidder_1", amount=90.0)

    with pytest.raises(UniqueViolation):
        await mongo.insert_bid(bid)


async def test_duplicate_project_key_is_unique_violation(mongo, client):
    projects(client).insert_error = DuplicateKeyError("E11000 duplicate key error")
    project = Project(
        id="proj_1",
        owner_id="pm_1",
        title="Roof repair",
        bidding_deadline=NOW + timedelta(hours=1),
        delivery_date=NOW + timedelta(days=5),
    )

    with pytest.raises(UniqueViolation):
        await mongo.insert_project(project)


async def test_stored_documents_drop_mongo_id(mongo, client):
    await mongo.insert_bid(Bid(id="bid_1", project_id="proj_1", bidder_id="bidder_1", amount=90.0))

    bid = await mongo.get_bid("bid_1")

    assert bid.id == "bid_1"
    assert bid.status == BidStatus.PENDING.value
    assert await mongo.get_bid("bid_missing") is None


# =============================================================================
# Cascades
# =============================================================================


async def test_award_rolls_back_when_project_moved(mongo, client):
    projects(client).matched = 0

    applied = await mongo.apply_award(
        "proj_1", "bid_1", ProjectStatus.REVIEWING, {"status": ProjectStatus.AWARDED}, NOW
    )

    assert applied is False
    assert bids(client).updates == []


async def test_award_flips_winner_then_losers(mongo, client):
    applied = await mongo.apply_award(
        "proj_1", "bid_1", ProjectStatus.REVIEWING, {"status": ProjectStatus.AWARDED}, NOW
    )

    assert applied is True
    (winner_query, winner_update), (losers_query, losers_update) = bids(client).updates
    assert winner_query == {"id": "bid_1", "project_id": "proj_1", "status": "pending"}
    assert winner_update["$set"]["status"] == "won"
    assert losers_query == {"project_id": "proj_1", "status": "pending", "id": {"$ne": "bid_1"}}
    assert losers_update["$set"]["status"] == "lost"
