"""MongoDB store for Procura.

Conditional writes are ``update_one`` calls whose filter includes the
expected status, so the server decides which of several racing callers wins.
The award and reset cascades run inside a client-session transaction, which
needs a replica set.
"""

from datetime import datetime
from typing import Any, Optional

import structlog
from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorCollection,
    AsyncIOMotorDatabase,
)
from pymongo.errors import DuplicateKeyError

from ..config import Settings, get_settings
from ..models import Bid, BidStatus, Project, ProjectStatus
from .base import ProjectStore, StatusSpec, UniqueViolation, plain_fields, status_values

logger = structlog.get_logger()


# ============================================================
# Collection Names
# ============================================================

PROJECTS_COLLECTION = "procura_projects"
BIDS_COLLECTION = "procura_bids"


class _Rollback(Exception):
    """Raised inside a transaction callback to abort without an error."""


def _clean(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc.pop("_id", None)
    return doc


def _status_filter(expected: StatusSpec) -> dict:
    values = status_values(expected)
    return values[0] if len(values) == 1 else {"$in": values}


class MongoStore(ProjectStore):
    """ProjectStore backed by MongoDB through motor."""

    def __init__(
        self,
        client: Optional[AsyncIOMotorClient] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._client = client or AsyncIOMotorClient(settings.mongodb_uri, tz_aware=True)
        self._db: AsyncIOMotorDatabase = self._client[settings.mongodb_database]
        logger.info("mongodb_connected", database=settings.mongodb_database)

    @property
    def client(self) -> AsyncIOMotorClient:
        return self._client

    @property
    def projects(self) -> AsyncIOMotorCollection:
        return self._db[PROJECTS_COLLECTION]

    @property
    def bids(self) -> AsyncIOMotorCollection:
        return self._db[BIDS_COLLECTION]

    async def close(self) -> None:
        self._client.close()
        logger.info("mongodb_disconnected")

    async def _in_transaction(self, callback) -> bool:
        """Run ``callback(session)`` in a transaction. False if it rolled back."""
        async with await self._client.start_session() as session:
            try:
                await session.with_transaction(callback)
            except _Rollback:
                return False
        return True

    # ============================================================
    # Project Operations
    # ============================================================

    async def insert_project(self, project: Project) -> None:
        try:
            await self.projects.insert_one(project.model_dump())
        except DuplicateKeyError as e:
            raise UniqueViolation(f"projects.id={project.id}") from e
        logger.info("project_stored", project_id=project.id)

    async def get_project(self, project_id: str) -> Optional[Project]:
        doc = await self.projects.find_one({"id": project_id})
        return Project(**_clean(doc)) if doc else None

    async def list_projects(
        self,
        status: Optional[StatusSpec] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Project]:
        query: dict[str, Any] = {}
        if status is not None:
            query["status"] = _status_filter(status)
        if owner_id is not None:
            query["owner_id"] = owner_id

        cursor = self.projects.find(query).sort("created_at", -1).limit(limit)
        projects = []
        async for doc in cursor:
            projects.append(Project(**_clean(doc)))
        return projects

    async def find_expired_bidding(self, now: datetime, limit: int = 500) -> list[Project]:
        cursor = self.projects.find({
            "status": ProjectStatus.BIDDING.value,
            "bidding_deadline": {"$lte": now},
        }).sort("bidding_deadline", 1).limit(limit)

        projects = []
        async for doc in cursor:
            projects.append(Project(**_clean(doc)))
        return projects

    async def conditional_update_project_status(
        self,
        project_id: str,
        expected_status: StatusSpec,
        fields: dict[str, Any],
    ) -> int:
        result = await self.projects.update_one(
            {"id": project_id, "status": _status_filter(expected_status)},
            {"$set": plain_fields(fields)},
        )
        return result.matched_count

    async def delete_project(self, project_id: str, allowed_statuses: StatusSpec) -> int:
        async def _delete(session: AsyncIOMotorClientSession):
            result = await self.projects.delete_one(
                {"id": project_id, "status": _status_filter(allowed_statuses)},
                session=session,
            )
            if result.deleted_count == 0:
                raise _Rollback()
            await self.bids.delete_many({"project_id": project_id}, session=session)

        deleted = await self._in_transaction(_delete)
        if deleted:
            logger.info("project_deleted", project_id=project_id)
        return 1 if deleted else 0

    # ============================================================
    # Bid Operations
    # ============================================================

    async def insert_bid(self, bid: Bid) -> None:
        try:
            await self.bids.insert_one(bid.model_dump())
        except DuplicateKeyError as e:
            raise UniqueViolation(
                f"bids.project_id_bidder_id={bid.project_id}/{bid.bidder_id}"
            ) from e

    async def get_bid(self, bid_id: str) -> Optional[Bid]:
        doc = await self.bids.find_one({"id": bid_id})
        return Bid(**_clean(doc)) if doc else None

    async def list_bids_by_project(
        self,
        project_id: str,
        status: Optional[StatusSpec] = None,
    ) -> list[Bid]:
        query: dict[str, Any] = {"project_id": project_id}
        if status is not None:
            query["status"] = _status_filter(status)

        cursor = self.bids.find(query).sort("created_at", 1)
        bids = []
        async for doc in cursor:
            bids.append(Bid(**_clean(doc)))
        return bids

    async def conditional_update_bid(
        self,
        bid_id: str,
        expected_status: StatusSpec,
        fields: dict[str, Any],
    ) -> int:
        result = await self.bids.update_one(
            {"id": bid_id, "status": _status_filter(expected_status)},
            {"$set": plain_fields(fields)},
        )
        return result.matched_count

    # ============================================================
    # Cascades
    # ============================================================

    async def apply_award(
        self,
        project_id: str,
        bid_id: str,
        expected_status: StatusSpec,
        project_fields: dict[str, Any],
        now: datetime,
    ) -> bool:
        pending = BidStatus.PENDING.value

        async def _award(session: AsyncIOMotorClientSession):
            result = await self.projects.update_one(
                {"id": project_id, "status": _status_filter(expected_status)},
                {"$set": plain_fields(project_fields)},
                session=session,
            )
            if result.matched_count == 0:
                raise _Rollback()

            result = await self.bids.update_one(
                {"id": bid_id, "project_id": project_id, "status": pending},
                {"$set": {"status": BidStatus.WON.value, "updated_at": now}},
                session=session,
            )
            if result.matched_count == 0:
                raise _Rollback()

            await self.bids.update_many(
                {"project_id": project_id, "status": pending, "id": {"$ne": bid_id}},
                {"$set": {"status": BidStatus.LOST.value, "updated_at": now}},
                session=session,
            )

        return await self._in_transaction(_award)

    async def apply_reset(
        self,
        project_id: str,
        expected_status: StatusSpec,
        now: datetime,
    ) -> bool:
        async def _reset(session: AsyncIOMotorClientSession):
            result = await self.projects.update_one(
                {"id": project_id, "status": _status_filter(expected_status)},
                {"$set": {
                    "status": ProjectStatus.DRAFT.value,
                    "awarded_bid_id": None,
                    "awarded_to": None,
                    "awarded_amount": None,
                    "completed_at": None,
                    "updated_at": now,
                }},
                session=session,
            )
            if result.matched_count == 0:
                raise _Rollback()

            await self.bids.update_many(
                {
                    "project_id": project_id,
                    "status": {"$in": [BidStatus.WON.value, BidStatus.LOST.value]},
                },
                {"$set": {"status": BidStatus.PENDING.value, "updated_at": now}},
                session=session,
            )

        return await self._in_transaction(_reset)

    # ============================================================
    # Index Setup
    # ============================================================

    async def setup_indexes(self) -> None:
        """Create indexes for all collections."""
        await self.projects.create_index([("id", 1)], unique=True)
        await self.projects.create_index([("status", 1), ("bidding_deadline", 1)])
        await self.projects.create_index([("owner_id", 1), ("created_at", -1)])

        await self.bids.create_index([("id", 1)], unique=True)
        # One bid per bidder per project; insert_bid relies on this.
        await self.bids.create_index([("project_id", 1), ("bidder_id", 1)], unique=True)
        await self.bids.create_index([("project_id", 1), ("status", 1)])

        logger.info("indexes_created")
