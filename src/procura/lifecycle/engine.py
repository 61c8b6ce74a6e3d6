"""Project and bid lifecycle.

Every transition follows the same shape: validate what can be validated from
a read, then issue exactly one conditional write guarded by the expected
status. The store decides which of several racing callers wins. Side effects
(notifications, ratings) run after the write has committed and can never
undo it.

    draft -> bidding -> reviewing -> awarded -> completed
      |         |
      +---------+--> cancelled
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog

from ..clock import Clock, SystemClock
from ..config import Settings, get_settings
from ..errors import (
    DeadlinePassed,
    DuplicateBid,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from ..models import (
    AWARDED_STATUSES,
    CLOSED_STATUSES,
    DELETABLE_STATUSES,
    Bid,
    BidPatch,
    BidStats,
    BidStatus,
    NoopReason,
    Outcome,
    Project,
    ProjectPatch,
    ProjectStatus,
    RatingPayload,
    TransitionResult,
    Trigger,
    can_transition,
    sources_of,
)
from ..notifications import Delivery, EventKind, NotificationDispatcher
from ..ratings import RatingCollaborator
from ..store import ProjectStore, UniqueViolation

logger = structlog.get_logger()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def project_ref(project: Project) -> dict:
    """JSON-friendly project summary for notification payloads."""
    return {"project_id": project.id, "title": project.title}


class LifecycleEngine:
    """The only writer of project and bid status."""

    def __init__(
        self,
        store: ProjectStore,
        dispatcher: NotificationDispatcher,
        ratings: Optional[RatingCollaborator] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.ratings = ratings
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    # ============================================================
    # Reads
    # ============================================================

    async def get_project(self, project_id: str) -> Project:
        project = await self.store.get_project(project_id)
        if not project:
            raise NotFound(f"Project {project_id} not found", project_id=project_id)
        return project

    async def get_bid(self, bid_id: str) -> Bid:
        bid = await self.store.get_bid(bid_id)
        if not bid:
            raise NotFound(f"Bid {bid_id} not found", bid_id=bid_id)
        return bid

    async def list_projects(
        self,
        status: Optional[ProjectStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Project]:
        return await self.store.list_projects(status=status, owner_id=owner_id, limit=limit)

    async def list_bids(
        self,
        project_id: str,
        bidder_id: Optional[str] = None,
    ) -> list[Bid]:
        await self.get_project(project_id)
        bids = await self.store.list_bids_by_project(project_id)
        if bidder_id is not None:
            bids = [b for b in bids if b.bidder_id == bidder_id]
        return bids

    async def bid_stats(self, project_id: str) -> BidStats:
        """Amount statistics over all bids on a project."""
        bids = await self.store.list_bids_by_project(project_id)
        if not bids:
            return BidStats()
        amounts = [b.amount for b in bids]
        return BidStats(
            count=len(amounts),
            min_amount=min(amounts),
            max_amount=max(amounts),
            avg_amount=sum(amounts) / len(amounts),
        )

    # ============================================================
    # Project Records
    # ============================================================

    async def create_project(
        self,
        owner_id: str,
        title: str,
        bidding_deadline: datetime,
        delivery_date: datetime,
        description: str = "",
        max_bid: Optional[float] = None,
        show_max_bid: bool = True,
    ) -> Project:
        """Create a project in draft."""
        bidding_deadline = as_utc(bidding_deadline)
        delivery_date = as_utc(delivery_date)

        if not title or not title.strip():
            raise ValidationError("Title is required")
        if bidding_deadline >= delivery_date:
            raise ValidationError("Bid due date must be before delivery date")
        if max_bid is not None and max_bid <= 0:
            raise ValidationError("Max bid must be positive")

        now = self.clock.now()
        project = Project(
            id=f"proj_{uuid.uuid4().hex[:8]}",
            owner_id=owner_id,
            title=title.strip(),
            description=description,
            status=ProjectStatus.DRAFT,
            bidding_deadline=bidding_deadline,
            delivery_date=delivery_date,
            max_bid=max_bid,
            show_max_bid=show_max_bid,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_project(project)

        logger.info(
            "project_created",
            project_id=project.id,
            owner_id=owner_id,
            bidding_deadline=bidding_deadline.isoformat(),
        )
        return project

    async def update_project(self, project_id: str, patch: ProjectPatch) -> Project:
        """Apply owner edits. Bid parameters are frozen outside draft."""
        project = await self.get_project(project_id)
        changes = patch.changes()
        if not changes:
            raise ValidationError("No fields to update")

        frozen = ProjectPatch.BID_PARAMETERS & changes.keys()
        if frozen and project.status != ProjectStatus.DRAFT.value:
            raise InvalidStateTransition(
                "Cannot modify bid parameters after bidding starts",
                current=project.status,
                operation="update_project",
                fields=sorted(frozen),
            )

        if "title" in changes and not (changes["title"] or "").strip():
            raise ValidationError("Title is required")
        if changes.get("max_bid") is not None and changes["max_bid"] <= 0:
            raise ValidationError("Max bid must be positive")
        for key in ("bidding_deadline", "delivery_date"):
            if key in changes:
                if changes[key] is None:
                    raise ValidationError(f"{key} cannot be cleared")
                changes[key] = as_utc(changes[key])

        deadline = changes.get("bidding_deadline", project.bidding_deadline)
        delivery = changes.get("delivery_date", project.delivery_date)
        if ("bidding_deadline" in changes or "delivery_date" in changes) and deadline >= delivery:
            raise ValidationError("Bid due date must be before delivery date")

        changes["updated_at"] = self.clock.now()
        changed = await self.store.conditional_update_project_status(
            project_id, project.status, changes
        )
        if not changed:
            current = await self.get_project(project_id)
            raise InvalidStateTransition(
                "Project changed while it was being edited",
                current=current.status,
                operation="update_project",
            )

        logger.info("project_updated", project_id=project_id, fields=sorted(patch.changes()))
        return await self.get_project(project_id)

    async def delete_project(self, project_id: str) -> None:
        """Delete a draft or bidding project together with its bids."""
        project = await self.get_project(project_id)
        if project.status not in {s.value for s in DELETABLE_STATUSES}:
            raise InvalidStateTransition(
                "Cannot delete awarded or completed projects",
                current=project.status,
                operation="delete_project",
            )
        if await self.store.list_bids_by_project(project_id, status=BidStatus.WON):
            raise InvalidStateTransition(
                "Cannot delete a project with a winning bid",
                current=project.status,
                operation="delete_project",
            )

        deleted = await self.store.delete_project(project_id, DELETABLE_STATUSES)
        if not deleted:
            current = await self.get_project(project_id)
            raise InvalidStateTransition(
                "Cannot delete awarded or completed projects",
                current=current.status,
                operation="delete_project",
            )

    # ============================================================
    # Guarded Transitions
    # ============================================================

    async def _guarded_write(
        self,
        operation: str,
        project_id: str,
        target: ProjectStatus,
        fields: dict,
    ) -> Project:
        """Single conditional write into ``target``; raise if no guarded edge led there."""
        changed = await self.store.conditional_update_project_status(
            project_id,
            sources_of(target),
            {"status": target, **fields},
        )
        if not changed:
            current = await self.get_project(project_id)
            raise InvalidStateTransition(
                f"Cannot {operation.replace('_', ' ')} a project in status '{current.status}'",
                current=current.status,
                operation=operation,
            )
        return await self.get_project(project_id)

    async def open_bidding(self, project_id: str) -> TransitionResult:
        """draft -> bidding. The deadline must still be ahead."""
        project = await self.get_project(project_id)
        if not can_transition(project.status, ProjectStatus.BIDDING):
            raise InvalidStateTransition(
                "Project must be in draft status to start bidding",
                current=project.status,
                operation="open_bidding",
            )

        now = self.clock.now()
        if project.bidding_deadline <= now:
            raise DeadlinePassed(
                "Bid due date is in the past",
                project_id=project_id,
                bidding_deadline=project.bidding_deadline.isoformat(),
            )

        project = await self._guarded_write(
            "open_bidding",
            project_id,
            ProjectStatus.BIDDING,
            {"updated_at": now},
        )
        logger.info("bidding_opened", project_id=project_id)

        await self.dispatcher.broadcast(
            self.settings.bidder_broadcast_role,
            EventKind.NEW_PROJECT,
            {
                **project_ref(project),
                "bidding_deadline": project.bidding_deadline.isoformat(),
                "max_bid": project.visible_ceiling,
            },
        )
        return TransitionResult(operation="open_bidding", outcome=Outcome.APPLIED, project=project)

    async def close_bidding(
        self,
        project_id: str,
        trigger: Trigger = Trigger.MANUAL,
    ) -> TransitionResult:
        """bidding -> reviewing, idempotently.

        Manual closes and scheduler sweeps both land here. The conditional
        write lets exactly one of them through; the others get a noop result
        and send no notifications.
        """
        now = self.clock.now()
        changed = await self.store.conditional_update_project_status(
            project_id,
            sources_of(ProjectStatus.REVIEWING),
            {"status": ProjectStatus.REVIEWING, "updated_at": now},
        )
        project = await self.get_project(project_id)

        if not changed:
            if project.status not in {s.value for s in CLOSED_STATUSES}:
                raise InvalidStateTransition(
                    f"Cannot close bidding for a project in status '{project.status}'",
                    current=project.status,
                    operation="close_bidding",
                )
            logger.info(
                "close_noop",
                project_id=project_id,
                status=project.status,
                trigger=Trigger(trigger).value,
            )
            return TransitionResult(
                operation="close_bidding",
                outcome=Outcome.NOOP,
                reason=NoopReason.ALREADY_CLOSED,
                project=project,
                trigger=trigger,
            )

        logger.info(
            "bidding_closed",
            project_id=project_id,
            title=project.title,
            trigger=Trigger(trigger).value,
        )
        await self.announce_closed(project, auto_closed=trigger == Trigger.SCHEDULER)
        return TransitionResult(
            operation="close_bidding",
            outcome=Outcome.APPLIED,
            project=project,
            trigger=trigger,
        )

    async def award(self, project_id: str, bid_id: str) -> TransitionResult:
        """reviewing -> awarded, flipping one bid to won and the rest to lost."""
        project = await self.get_project(project_id)
        if not can_transition(project.status, ProjectStatus.AWARDED):
            raise InvalidStateTransition(
                "Project must be in reviewing status to award",
                current=project.status,
                operation="award",
            )

        bid = await self.store.get_bid(bid_id)
        if not bid or bid.project_id != project_id:
            raise NotFound("Bid not found for this project", project_id=project_id, bid_id=bid_id)
        if bid.status != BidStatus.PENDING.value:
            raise InvalidStateTransition(
                f"Bid {bid_id} is not pending (status: {bid.status})",
                current=project.status,
                operation="award",
            )

        now = self.clock.now()
        applied = await self.store.apply_award(
            project_id,
            bid_id,
            sources_of(ProjectStatus.AWARDED),
            award_fields(bid, ProjectStatus.AWARDED, now),
            now,
        )

        if not applied:
            current = await self.get_project(project_id)
            if current.status in {s.value for s in AWARDED_STATUSES}:
                logger.info(
                    "award_noop",
                    project_id=project_id,
                    bid_id=bid_id,
                    awarded_bid_id=current.awarded_bid_id,
                )
                return TransitionResult(
                    operation="award",
                    outcome=Outcome.NOOP,
                    reason=NoopReason.ALREADY_AWARDED,
                    project=current,
                )
            raise InvalidStateTransition(
                f"Bid {bid_id} or project {project_id} changed during award",
                current=current.status,
                operation="award",
            )

        project = await self.get_project(project_id)
        logger.info(
            "project_awarded",
            project_id=project_id,
            bid_id=bid_id,
            bidder_id=bid.bidder_id,
            amount=bid.amount,
        )
        await self.announce_award(project)
        return TransitionResult(operation="award", outcome=Outcome.APPLIED, project=project)

    async def complete(
        self,
        project_id: str,
        rating: Optional[RatingPayload] = None,
        rater_id: Optional[str] = None,
    ) -> TransitionResult:
        """awarded -> completed, forwarding an optional rating of the winner."""
        now = self.clock.now()
        project = await self._guarded_write(
            "complete",
            project_id,
            ProjectStatus.COMPLETED,
            {"completed_at": now, "updated_at": now},
        )
        logger.info("project_completed", project_id=project_id)

        deliveries = []
        if project.awarded_to:
            deliveries.append(Delivery(
                project.awarded_to,
                EventKind.PROJECT_COMPLETED,
                project_ref(project),
            ))

        if rating is not None:
            stored = await self._forward_rating(project, rating, rater_id or project.owner_id)
            if stored is not None:
                deliveries.append(Delivery(
                    project.awarded_to,
                    EventKind.RATING_RECEIVED,
                    {**project_ref(project), "rating_id": stored.id, "overall": rating.overall},
                ))

        await self.dispatcher.send(deliveries, context={"project_id": project_id})
        return TransitionResult(operation="complete", outcome=Outcome.APPLIED, project=project)

    async def _forward_rating(self, project: Project, rating: RatingPayload, rater_id: str):
        if self.ratings is None or not project.awarded_to:
            logger.warning("rating_dropped", project_id=project.id, reason="no rating collaborator")
            return None
        try:
            return await self.ratings.submit_rating(project.id, project.awarded_to, rater_id, rating)
        except Exception as e:
            logger.warning("rating_forward_failed", project_id=project.id, rater_id=rater_id, error=str(e))
            return None

    async def cancel(self, project_id: str) -> TransitionResult:
        """draft|bidding -> cancelled."""
        project = await self._guarded_write(
            "cancel",
            project_id,
            ProjectStatus.CANCELLED,
            {"updated_at": self.clock.now()},
        )
        logger.info("project_cancelled", project_id=project_id)

        await self.announce_cancelled(project)
        return TransitionResult(operation="cancel", outcome=Outcome.APPLIED, project=project)

    # ============================================================
    # Side Effects
    # ============================================================

    async def announce_closed(self, project: Project, auto_closed: bool = False) -> None:
        """Tell the owner and every pending bidder that bidding ended.

        Never raises: the close has already committed by the time this runs.
        """
        closed_at = project.updated_at.isoformat()
        try:
            stats = await self.bid_stats(project.id)
            pending = await self.store.list_bids_by_project(project.id, status=BidStatus.PENDING)
        except Exception as e:
            logger.warning(
                "notification_prepare_failed",
                project_id=project.id,
                event_kind=EventKind.BIDDING_CLOSED.value,
                error=str(e),
            )
            return

        deliveries = [Delivery(
            project.owner_id,
            EventKind.BIDDING_CLOSED,
            {
                **project_ref(project),
                "closed_at": closed_at,
                "auto_closed": auto_closed,
                "bid_stats": stats.model_dump(),
            },
        )]
        for bidder_id in dict.fromkeys(b.bidder_id for b in pending):
            deliveries.append(Delivery(
                bidder_id,
                EventKind.BIDDING_CLOSED,
                {**project_ref(project), "closed_at": closed_at},
            ))

        await self.dispatcher.send(deliveries, context={"project_id": project.id})

    async def announce_award(self, project: Project) -> None:
        """Tell the winner and every losing bidder how it went. Never raises."""
        try:
            bids = await self.store.list_bids_by_project(project.id)
        except Exception as e:
            logger.warning(
                "notification_prepare_failed",
                project_id=project.id,
                event_kind=EventKind.BID_ACCEPTED.value,
                error=str(e),
            )
            return

        deliveries = []
        for bid in bids:
            if bid.status == BidStatus.WON.value:
                kind = EventKind.BID_ACCEPTED
            elif bid.status == BidStatus.LOST.value:
                kind = EventKind.BID_REJECTED
            else:
                continue
            deliveries.append(Delivery(
                bid.bidder_id,
                kind,
                {**project_ref(project), "bid_id": bid.id, "amount": bid.amount, "status": bid.status},
            ))

        await self.dispatcher.send(deliveries, context={"project_id": project.id})

    async def announce_cancelled(self, project: Project) -> None:
        """Tell every pending bidder the project was cancelled. Never raises."""
        try:
            pending = await self.store.list_bids_by_project(project.id, status=BidStatus.PENDING)
        except Exception as e:
            logger.warning(
                "notification_prepare_failed",
                project_id=project.id,
                event_kind=EventKind.PROJECT_CANCELLED.value,
                error=str(e),
            )
            return

        await self.dispatcher.send(
            [Delivery(b.bidder_id, EventKind.PROJECT_CANCELLED, project_ref(project)) for b in pending],
            context={"project_id": project.id},
        )

    # ============================================================
    # Bids
    # ============================================================

    def _check_amount(self, project: Project, amount: Optional[float]) -> None:
        if amount is None or amount <= 0:
            raise ValidationError("Valid bid amount required", amount=amount)
        ceiling = project.visible_ceiling
        if ceiling is not None and amount > ceiling:
            raise ValidationError(
                f"Bid amount {amount} exceeds the maximum bid of {ceiling}",
                amount=amount,
                max_bid=ceiling,
            )

    def _check_window(self, project: Project, operation: str) -> None:
        if project.status != ProjectStatus.BIDDING.value:
            raise InvalidStateTransition(
                "Project is not open for bidding",
                current=project.status,
                operation=operation,
            )
        if self.clock.now() >= project.bidding_deadline:
            raise DeadlinePassed(
                "Bid submission deadline has passed",
                project_id=project.id,
                bidding_deadline=project.bidding_deadline.isoformat(),
            )

    async def submit_bid(
        self,
        project_id: str,
        bidder_id: str,
        amount: float,
        comment: Optional[str] = None,
        alternate_delivery_date: Optional[datetime] = None,
    ) -> Bid:
        """Place a sealed bid.

        There is no "already bid?" lookup: the insert goes straight to the
        store and the (project, bidder) unique key rejects the second one.
        """
        if amount is None or amount <= 0:
            raise ValidationError("Valid bid amount required", amount=amount)

        project = await self.get_project(project_id)
        self._check_window(project, "submit_bid")
        self._check_amount(project, amount)

        now = self.clock.now()
        bid = Bid(
            id=f"bid_{uuid.uuid4().hex[:8]}",
            project_id=project_id,
            bidder_id=bidder_id,
            amount=amount,
            comment=comment,
            alternate_delivery_date=as_utc(alternate_delivery_date),
            status=BidStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        try:
            await self.store.insert_bid(bid)
        except UniqueViolation:
            logger.info("duplicate_bid", project_id=project_id, bidder_id=bidder_id)
            raise DuplicateBid(
                "You have already submitted a bid for this project",
                project_id=project_id,
                bidder_id=bidder_id,
            )

        # The window may have closed between the read and the insert.
        current = await self.get_project(project_id)
        if current.status != ProjectStatus.BIDDING.value:
            await self.store.conditional_update_bid(
                bid.id,
                BidStatus.PENDING,
                {"status": BidStatus.WITHDRAWN, "updated_at": self.clock.now()},
            )
            logger.warning("late_bid_withdrawn", project_id=project_id, bid_id=bid.id)
            raise InvalidStateTransition(
                "Project closed while the bid was being submitted",
                current=current.status,
                operation="submit_bid",
            )

        logger.info(
            "bid_submitted",
            bid_id=bid.id,
            project_id=project_id,
            bidder_id=bidder_id,
            amount=amount,
        )

        await self.dispatcher.send(
            [Delivery(
                project.owner_id,
                EventKind.BID_RECEIVED,
                {**project_ref(project), "bid_id": bid.id},
            )],
            context={"project_id": project_id},
        )
        return bid

    async def amend_bid(self, bid_id: str, patch: BidPatch) -> Bid:
        """Change a pending bid while the window is open."""
        changes = patch.changes()
        if not changes:
            raise ValidationError("No fields to update")

        bid = await self.get_bid(bid_id)
        if bid.status != BidStatus.PENDING.value:
            raise InvalidStateTransition(
                "Cannot update bid after it has been reviewed",
                current=bid.status,
                operation="amend_bid",
            )

        project = await self.get_project(bid.project_id)
        self._check_window(project, "amend_bid")
        if "amount" in changes:
            self._check_amount(project, changes["amount"])
        if "alternate_delivery_date" in changes:
            changes["alternate_delivery_date"] = as_utc(changes["alternate_delivery_date"])

        changes["updated_at"] = self.clock.now()
        changed = await self.store.conditional_update_bid(bid_id, BidStatus.PENDING, changes)
        if not changed:
            current = await self.get_bid(bid_id)
            raise InvalidStateTransition(
                "Cannot update bid after it has been reviewed",
                current=current.status,
                operation="amend_bid",
            )

        logger.info("bid_amended", bid_id=bid_id, fields=sorted(patch.changes()))
        return await self.get_bid(bid_id)

    async def withdraw_bid(self, bid_id: str) -> Bid:
        """pending -> withdrawn, unless the project is already awarded."""
        bid = await self.get_bid(bid_id)
        if bid.status != BidStatus.PENDING.value:
            raise InvalidStateTransition(
                f"Can only withdraw pending bids (status: {bid.status})",
                current=bid.status,
                operation="withdraw_bid",
            )

        project = await self.get_project(bid.project_id)
        if project.status in {s.value for s in AWARDED_STATUSES}:
            raise InvalidStateTransition(
                "Cannot withdraw bid from awarded/completed project",
                current=project.status,
                operation="withdraw_bid",
            )

        changed = await self.store.conditional_update_bid(
            bid_id,
            BidStatus.PENDING,
            {"status": BidStatus.WITHDRAWN, "updated_at": self.clock.now()},
        )
        if not changed:
            current = await self.get_bid(bid_id)
            raise InvalidStateTransition(
                f"Can only withdraw pending bids (status: {current.status})",
                current=current.status,
                operation="withdraw_bid",
            )

        logger.info("bid_withdrawn", bid_id=bid_id, bidder_id=bid.bidder_id)
        return await self.get_bid(bid_id)


def award_fields(bid: Bid, status: ProjectStatus, now: datetime) -> dict:
    """Project columns written by the award cascade."""
    fields = {
        "status": status,
        "awarded_bid_id": bid.id,
        "awarded_to": bid.bidder_id,
        "awarded_amount": bid.amount,
        "updated_at": now,
    }
    if status == ProjectStatus.COMPLETED:
        fields["completed_at"] = now
    return fields
