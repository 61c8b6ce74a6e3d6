"""In-process store for tests and local runs.

Methods yield to the event loop once before touching state, like a network
round trip would, and then do their work without awaiting. Under asyncio that
makes each method atomic, which is the same guarantee the MongoDB store gets
from conditional updates and transactions.
"""

import asyncio
from datetime import datetime
from typing import Any, Optional

import structlog

from ..models import Bid, BidStatus, Project, ProjectStatus
from .base import ProjectStore, StatusSpec, UniqueViolation, plain_fields, status_values

logger = structlog.get_logger()


class MemoryStore(ProjectStore):
    """Dict-backed ProjectStore."""

    def __init__(self):
        self._projects: dict[str, Project] = {}
        self._bids: dict[str, Bid] = {}
        # (project_id, bidder_id) -> bid_id
        self._bid_keys: dict[tuple[str, str], str] = {}

    async def _yield(self) -> None:
        await asyncio.sleep(0)

    # ============================================================
    # Project Operations
    # ============================================================

    async def insert_project(self, project: Project) -> None:
        await self._yield()
        if project.id in self._projects:
            raise UniqueViolation(f"projects.id={project.id}")
        self._projects[project.id] = project.model_copy(deep=True)

    async def get_project(self, project_id: str) -> Optional[Project]:
        await self._yield()
        project = self._projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    async def list_projects(
        self,
        status: Optional[StatusSpec] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Project]:
        await self._yield()
        wanted = status_values(status) if status is not None else None
        projects = [
            p for p in self._projects.values()
            if (wanted is None or p.status in wanted)
            and (owner_id is None or p.owner_id == owner_id)
        ]
        projects.sort(key=lambda p: p.created_at, reverse=True)
        return [p.model_copy(deep=True) for p in projects[:limit]]

    async def find_expired_bidding(self, now: datetime, limit: int = 500) -> list[Project]:
        await self._yield()
        expired = [
            p for p in self._projects.values()
            if p.status == ProjectStatus.BIDDING.value and p.bidding_deadline <= now
        ]
        expired.sort(key=lambda p: p.bidding_deadline)
        return [p.model_copy(deep=True) for p in expired[:limit]]

    async def conditional_update_project_status(
        self,
        project_id: str,
        expected_status: StatusSpec,
        fields: dict[str, Any],
    ) -> int:
        await self._yield()
        project = self._projects.get(project_id)
        if project is None or project.status not in status_values(expected_status):
            return 0
        self._projects[project_id] = project.model_copy(update=plain_fields(fields))
        return 1

    async def delete_project(self, project_id: str, allowed_statuses: StatusSpec) -> int:
        await self._yield()
        project = self._projects.get(project_id)
        if project is None or project.status not in status_values(allowed_statuses):
            return 0
        del self._projects[project_id]
        for bid in [b for b in self._bids.values() if b.project_id == project_id]:
            del self._bids[bid.id]
            self._bid_keys.pop((bid.project_id, bid.bidder_id), None)
        logger.info("project_deleted", project_id=project_id)
        return 1

    # ============================================================
    # Bid Operations
    # ============================================================

    async def insert_bid(self, bid: Bid) -> None:
        await self._yield()
        key = (bid.project_id, bid.bidder_id)
        if key in self._bid_keys:
            raise UniqueViolation(f"bids.project_id_bidder_id={bid.project_id}/{bid.bidder_id}")
        self._bid_keys[key] = bid.id
        self._bids[bid.id] = bid.model_copy(deep=True)

    async def get_bid(self, bid_id: str) -> Optional[Bid]:
        await self._yield()
        bid = self._bids.get(bid_id)
        return bid.model_copy(deep=True) if bid else None

    async def list_bids_by_project(
        self,
        project_id: str,
        status: Optional[StatusSpec] = None,
    ) -> list[Bid]:
        await self._yield()
        wanted = status_values(status) if status is not None else None
        bids = [
            b for b in self._bids.values()
            if b.project_id == project_id and (wanted is None or b.status in wanted)
        ]
        bids.sort(key=lambda b: b.created_at)
        return [b.model_copy(deep=True) for b in bids]

    async def conditional_update_bid(
        self,
        bid_id: str,
        expected_status: StatusSpec,
        fields: dict[str, Any],
    ) -> int:
        await self._yield()
        bid = self._bids.get(bid_id)
        if bid is None or bid.status not in status_values(expected_status):
            return 0
        self._bids[bid_id] = bid.model_copy(update=plain_fields(fields))
        return 1

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
        await self._yield()
        project = self._projects.get(project_id)
        if project is None or project.status not in status_values(expected_status):
            return False
        winner = self._bids.get(bid_id)
        if (
            winner is None
            or winner.project_id != project_id
            or winner.status != BidStatus.PENDING.value
        ):
            return False

        self._projects[project_id] = project.model_copy(update=plain_fields(project_fields))
        for bid in list(self._bids.values()):
            if bid.project_id != project_id or bid.status != BidStatus.PENDING.value:
                continue
            status = BidStatus.WON if bid.id == bid_id else BidStatus.LOST
            self._bids[bid.id] = bid.model_copy(
                update={"status": status.value, "updated_at": now}
            )
        return True

    async def apply_reset(
        self,
        project_id: str,
        expected_status: StatusSpec,
        now: datetime,
    ) -> bool:
        await self._yield()
        project = self._projects.get(project_id)
        if project is None or project.status not in status_values(expected_status):
            return False

        self._projects[project_id] = project.model_copy(update={
            "status": ProjectStatus.DRAFT.value,
            "awarded_bid_id": None,
            "awarded_to": None,
            "awarded_amount": None,
            "completed_at": None,
            "updated_at": now,
        })
        decided = {BidStatus.WON.value, BidStatus.LOST.value}
        for bid in list(self._bids.values()):
            if bid.project_id == project_id and bid.status in decided:
                self._bids[bid.id] = bid.model_copy(
                    update={"status": BidStatus.PENDING.value, "updated_at": now}
                )
        return True
