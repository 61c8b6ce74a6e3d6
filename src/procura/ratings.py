"""Rating collaborator: owners rate the bidder they awarded.

The engine only forwards payloads from ``complete``. One rating per
(project, rater) is this module's rule, enforced by a unique key, not by the
engine.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo.errors import DuplicateKeyError

from .config import Settings, get_settings
from .errors import DuplicateRating
from .models import Rating, RatingPayload

logger = structlog.get_logger()

RATINGS_COLLECTION = "procura_ratings"


def _build_rating(project_id: str, rated_user_id: str, rater_id: str, payload: RatingPayload) -> Rating:
    return Rating(
        id=f"rating_{uuid.uuid4().hex[:8]}",
        project_id=project_id,
        rated_user_id=rated_user_id,
        rater_id=rater_id,
        created_at=datetime.now(timezone.utc),
        **payload.model_dump(),
    )


class RatingCollaborator(ABC):
    """Accepts ratings keyed by (project, rated user, rater)."""

    @abstractmethod
    async def submit_rating(
        self,
        project_id: str,
        rated_user_id: str,
        rater_id: str,
        payload: RatingPayload,
    ) -> Rating:
        """Store a rating.

        Raises:
            DuplicateRating: the rater already rated this project
        """
        ...

    @abstractmethod
    async def ratings_for_user(self, user_id: str) -> list[Rating]:
        ...


class MemoryRatings(RatingCollaborator):
    """In-process ratings."""

    def __init__(self):
        self._ratings: dict[tuple[str, str], Rating] = {}

    async def submit_rating(
        self,
        project_id: str,
        rated_user_id: str,
        rater_id: str,
        payload: RatingPayload,
    ) -> Rating:
        await asyncio.sleep(0)
        key = (project_id, rater_id)
        if key in self._ratings:
            raise DuplicateRating(
                "You have already rated this contractor for this project",
                project_id=project_id,
            )
        rating = _build_rating(project_id, rated_user_id, rater_id, payload)
        self._ratings[key] = rating
        logger.info("rating_created", rating_id=rating.id, project_id=project_id)
        return rating

    async def ratings_for_user(self, user_id: str) -> list[Rating]:
        await asyncio.sleep(0)
        return [r for r in self._ratings.values() if r.rated_user_id == user_id]


class MongoRatings(RatingCollaborator):
    """Ratings in MongoDB, unique on (project_id, rater_id)."""

    def __init__(
        self,
        client: Optional[AsyncIOMotorClient] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._client = client or AsyncIOMotorClient(settings.mongodb_uri, tz_aware=True)
        self._collection: AsyncIOMotorCollection = self._client[settings.mongodb_database][RATINGS_COLLECTION]

    async def submit_rating(
        self,
        project_id: str,
        rated_user_id: str,
        rater_id: str,
        payload: RatingPayload,
    ) -> Rating:
        rating = _build_rating(project_id, rated_user_id, rater_id, payload)
        try:
            await self._collection.insert_one(rating.model_dump())
        except DuplicateKeyError as e:
            raise DuplicateRating(
                "You have already rated this contractor for this project",
                project_id=project_id,
            ) from e
        logger.info("rating_created", rating_id=rating.id, project_id=project_id)
        return rating

    async def ratings_for_user(self, user_id: str) -> list[Rating]:
        ratings = []
        async for doc in self._collection.find({"rated_user_id": user_id}).sort("created_at", -1):
            doc.pop("_id", None)
            ratings.append(Rating(**doc))
        return ratings

    async def setup_indexes(self) -> None:
        await self._collection.create_index([("id", 1)], unique=True)
        await self._collection.create_index([("project_id", 1), ("rater_id", 1)], unique=True)
        await self._collection.create_index([("rated_user_id", 1)])


def create_ratings(settings: Optional[Settings] = None, client: Optional[AsyncIOMotorClient] = None) -> RatingCollaborator:
    """Ratings backend matching ``settings.store_backend``."""
    settings = settings or get_settings()
    if settings.store_backend == "memory":
        return MemoryRatings()
    return MongoRatings(client=client, settings=settings)
