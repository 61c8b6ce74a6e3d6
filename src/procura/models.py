"""Pydantic models for projects, bids and engine results."""

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional
from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Enums
# ============================================================

class ProjectStatus(str, Enum):
    DRAFT = "draft"
    BIDDING = "bidding"
    REVIEWING = "reviewing"
    AWARDED = "awarded"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BidStatus(str, Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    WITHDRAWN = "withdrawn"


class Role(str, Enum):
    ADMIN = "admin"
    PROJECT_MANAGER = "project_manager"
    INSTALLATION_COMPANY = "installation_company"
    OPERATIONS = "operations"


class Outcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"


class NoopReason(str, Enum):
    ALREADY_CLOSED = "already_closed"
    ALREADY_AWARDED = "already_awarded"


class OperationKind(str, Enum):
    GUARDED = "guarded"
    OVERRIDE = "override"


class Trigger(str, Enum):
    MANUAL = "manual"
    SCHEDULER = "scheduler"


AWARDED_STATUSES = frozenset({ProjectStatus.AWARDED, ProjectStatus.COMPLETED})
DELETABLE_STATUSES = frozenset({ProjectStatus.DRAFT, ProjectStatus.BIDDING})
CLOSED_STATUSES = frozenset({ProjectStatus.REVIEWING, ProjectStatus.AWARDED, ProjectStatus.COMPLETED})

# Guarded edges of the project state machine. reset_to_draft is an override
# and is not listed.
TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.DRAFT: frozenset({ProjectStatus.BIDDING, ProjectStatus.CANCELLED}),
    ProjectStatus.BIDDING: frozenset({ProjectStatus.REVIEWING, ProjectStatus.CANCELLED}),
    ProjectStatus.REVIEWING: frozenset({ProjectStatus.AWARDED}),
    ProjectStatus.AWARDED: frozenset({ProjectStatus.COMPLETED}),
    ProjectStatus.COMPLETED: frozenset(),
    ProjectStatus.CANCELLED: frozenset(),
}


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    """Whether ``current -> target`` is a guarded edge."""
    return ProjectStatus(target) in TRANSITIONS[ProjectStatus(current)]


def sources_of(target: ProjectStatus) -> frozenset[ProjectStatus]:
    """Statuses with a guarded edge into ``target``; the expected set of its conditional write."""
    target = ProjectStatus(target)
    return frozenset(s for s, targets in TRANSITIONS.items() if target in targets)


# ============================================================
# Project Models
# ============================================================

class Project(BaseModel):
    """Procurement project open to competitive bids."""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    owner_id: str
    title: str
    description: str = ""

    # Bidding window
    status: ProjectStatus = ProjectStatus.DRAFT
    bidding_deadline: datetime
    delivery_date: datetime

    # Ceiling
    max_bid: Optional[float] = None
    show_max_bid: bool = True

    # Award
    awarded_bid_id: Optional[str] = None
    awarded_to: Optional[str] = None
    awarded_amount: Optional[float] = None
    completed_at: Optional[datetime] = None

    # Timestamps
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def visible_ceiling(self) -> Optional[float]:
        """Ceiling bidders are held to, if it is shown to them."""
        return self.max_bid if self.show_max_bid else None


class ProjectPatch(BaseModel):
    """Owner edits to a project. Unset fields are left alone."""
    title: Optional[str] = None
    description: Optional[str] = None
    bidding_deadline: Optional[datetime] = None
    delivery_date: Optional[datetime] = None
    max_bid: Optional[float] = None
    show_max_bid: Optional[bool] = None

    # Fields frozen once the project leaves draft
    BID_PARAMETERS: ClassVar[frozenset[str]] = frozenset({"bidding_deadline", "max_bid"})

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


# ============================================================
# Bid Models
# ============================================================

class Bid(BaseModel):
    """Sealed bid on a project. One per (project, bidder)."""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    project_id: str
    bidder_id: str

    amount: float
    comment: Optional[str] = None
    alternate_delivery_date: Optional[datetime] = None

    status: BidStatus = BidStatus.PENDING

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BidPatch(BaseModel):
    """Bidder edits to a pending bid."""
    amount: Optional[float] = None
    comment: Optional[str] = None
    alternate_delivery_date: Optional[datetime] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class BidStats(BaseModel):
    """Amount statistics over a project's bids."""
    count: int = 0
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    avg_amount: Optional[float] = None


# ============================================================
# Rating Models
# ============================================================

class RatingPayload(BaseModel):
    """Owner's rating of the awarded bidder, scored 1-5 per dimension."""
    price: int = Field(ge=1, le=5)
    speed: int = Field(ge=1, le=5)
    quality: int = Field(ge=1, le=5)
    responsiveness: int = Field(ge=1, le=5)
    customer_satisfaction: int = Field(ge=1, le=5)
    comments: Optional[str] = None

    @property
    def overall(self) -> float:
        scores = [
            self.price,
            self.speed,
            self.quality,
            self.responsiveness,
            self.customer_satisfaction,
        ]
        return sum(scores) / len(scores)


class Rating(RatingPayload):
    """Stored rating keyed by (project, rater)."""
    id: str
    project_id: str
    rated_user_id: str
    rater_id: str
    created_at: datetime = Field(default_factory=_utcnow)


# ============================================================
# Engine Results
# ============================================================

class TransitionResult(BaseModel):
    """Outcome of a project state transition.

    ``outcome`` is ``noop`` when another caller already performed the
    transition; ``reason`` then says which race was lost.
    """
    model_config = ConfigDict(use_enum_values=True)

    operation: str
    outcome: Outcome
    project: Project
    reason: Optional[NoopReason] = None
    kind: OperationKind = OperationKind.GUARDED
    trigger: Trigger = Trigger.MANUAL

    @property
    def applied(self) -> bool:
        return self.outcome == Outcome.APPLIED
