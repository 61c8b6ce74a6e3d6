"""Privileged force transitions.

Overrides skip the guarded precondition set (deadlines, the normal edge
list) but not the write discipline: each one reads the current status and
issues a single conditional write keyed on it, so a concurrent guarded
transition still wins or loses cleanly. Results carry ``kind=override``.
"""

from typing import Optional

import structlog

from ..errors import InvalidStateTransition, NotFound, ValidationError
from ..models import (
    AWARDED_STATUSES,
    CLOSED_STATUSES,
    BidStatus,
    NoopReason,
    OperationKind,
    Outcome,
    ProjectStatus,
    TransitionResult,
)
from ..notifications import Delivery, EventKind
from .engine import LifecycleEngine, award_fields, project_ref

logger = structlog.get_logger()


class OverrideOperations:
    """Admin-only transitions layered over a ``LifecycleEngine``."""

    def __init__(self, engine: LifecycleEngine):
        self.engine = engine
        self.store = engine.store

    def _result(self, operation: str, project, outcome=Outcome.APPLIED, reason=None) -> TransitionResult:
        return TransitionResult(
            operation=operation,
            outcome=outcome,
            reason=reason,
            project=project,
            kind=OperationKind.OVERRIDE,
        )

    def _conflict(self, operation: str, current: str) -> InvalidStateTransition:
        return InvalidStateTransition(
            f"Cannot {operation.replace('_', ' ')} a project in status '{current}'",
            current=current,
            operation=operation,
        )

    async def force_close(self, project_id: str) -> TransitionResult:
        """draft|bidding -> reviewing, ignoring the deadline."""
        project = await self.engine.get_project(project_id)
        if project.status in {s.value for s in CLOSED_STATUSES}:
            return self._result("force_close", project, Outcome.NOOP, NoopReason.ALREADY_CLOSED)
        if project.status not in (ProjectStatus.DRAFT.value, ProjectStatus.BIDDING.value):
            raise self._conflict("force_close", project.status)

        changed = await self.store.conditional_update_project_status(
            project_id,
            project.status,
            {"status": ProjectStatus.REVIEWING, "updated_at": self.engine.clock.now()},
        )
        current = await self.engine.get_project(project_id)
        if not changed:
            if current.status in {s.value for s in CLOSED_STATUSES}:
                return self._result("force_close", current, Outcome.NOOP, NoopReason.ALREADY_CLOSED)
            raise self._conflict("force_close", current.status)

        logger.info("override_force_close", project_id=project_id, from_status=project.status)
        await self.engine.announce_closed(current)
        return self._result("force_close", current)

    async def force_complete(self, project_id: str, bid_id: Optional[str] = None) -> TransitionResult:
        """awarded -> completed, or reviewing -> completed through the award cascade.

        Args:
            project_id: Project to complete
            bid_id: Winning bid, required when the project is still in reviewing

        Returns:
            TransitionResult tagged as an override
        """
        project = await self.engine.get_project(project_id)
        now = self.engine.clock.now()

        if project.status == ProjectStatus.AWARDED.value:
            changed = await self.store.conditional_update_project_status(
                project_id,
                ProjectStatus.AWARDED,
                {"status": ProjectStatus.COMPLETED, "completed_at": now, "updated_at": now},
            )
            if not changed:
                current = await self.engine.get_project(project_id)
                raise self._conflict("force_complete", current.status)
            current = await self.engine.get_project(project_id)
            logger.info("override_force_complete", project_id=project_id, from_status=project.status)
            if current.awarded_to:
                await self.engine.dispatcher.send(
                    [Delivery(current.awarded_to, EventKind.PROJECT_COMPLETED, project_ref(current))],
                    context={"project_id": project_id},
                )
            return self._result("force_complete", current)

        if project.status != ProjectStatus.REVIEWING.value:
            raise self._conflict("force_complete", project.status)
        if not bid_id:
            raise ValidationError("bid_id is required to complete a project in reviewing")

        bid = await self.store.get_bid(bid_id)
        if not bid or bid.project_id != project_id:
            raise NotFound("Bid not found for this project", project_id=project_id, bid_id=bid_id)
        if bid.status != BidStatus.PENDING.value:
            raise InvalidStateTransition(
                f"Bid {bid_id} is not pending (status: {bid.status})",
                current=project.status,
                operation="force_complete",
            )

        applied = await self.store.apply_award(
            project_id,
            bid_id,
            ProjectStatus.REVIEWING,
            award_fields(bid, ProjectStatus.COMPLETED, now),
            now,
        )
        current = await self.engine.get_project(project_id)
        if not applied:
            raise self._conflict("force_complete", current.status)

        logger.info(
            "override_force_complete",
            project_id=project_id,
            from_status=project.status,
            bid_id=bid_id,
        )
        await self.engine.announce_award(current)
        await self.engine.dispatcher.send(
            [Delivery(current.awarded_to, EventKind.PROJECT_COMPLETED, project_ref(current))],
            context={"project_id": project_id},
        )
        return self._result("force_complete", current)

    async def reset_to_draft(self, project_id: str) -> TransitionResult:
        """Any status -> draft. Award fields are cleared and won/lost bids reopen."""
        project = await self.engine.get_project(project_id)
        if project.status == ProjectStatus.DRAFT.value:
            raise self._conflict("reset_to_draft", project.status)

        affected = []
        if project.status in {s.value for s in AWARDED_STATUSES} or project.status == ProjectStatus.REVIEWING.value:
            bids = await self.store.list_bids_by_project(project_id)
            affected = [b.bidder_id for b in bids if b.status in (BidStatus.WON.value, BidStatus.LOST.value)]

        applied = await self.store.apply_reset(project_id, project.status, self.engine.clock.now())
        current = await self.engine.get_project(project_id)
        if not applied:
            raise self._conflict("reset_to_draft", current.status)

        logger.info("override_reset_to_draft", project_id=project_id, from_status=project.status)

        recipients = dict.fromkeys([project.owner_id, *affected])
        await self.engine.dispatcher.send(
            [
                Delivery(user_id, EventKind.PROJECT_UPDATE, {
                    **project_ref(current),
                    "status": current.status,
                    "previous_status": project.status,
                })
                for user_id in recipients
            ],
            context={"project_id": project_id},
        )
        return self._result("reset_to_draft", current)
