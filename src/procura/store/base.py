"""Abstract store interface for projects and bids.

The store is the only shared mutable resource. Every method that changes a
status column is conditional: it names the status it expects to find and
reports how many rows it actually changed, so concurrent callers never need
an application-level lock.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional, Union

from ..models import Bid, Project, ProjectStatus, BidStatus

StatusSpec = Union[str, ProjectStatus, BidStatus, Iterable[Union[str, ProjectStatus, BidStatus]]]


class UniqueViolation(Exception):
    """A write collided with a unique index."""

    def __init__(self, key: str):
        super().__init__(f"unique constraint violated: {key}")
        self.key = key


def status_values(expected: StatusSpec) -> list[str]:
    """Normalize one status or a collection of statuses to plain strings."""
    if isinstance(expected, (str, Enum)):
        expected = [expected]
    return [s.value if isinstance(s, Enum) else s for s in expected]


def plain_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Replace enum members with their values before writing."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


class ProjectStore(ABC):
    """Durable record of projects and bids.

    Implementations must make each method atomic on its own. ``apply_award``
    and ``apply_reset`` touch several rows and must commit all of them or
    none.
    """

    # ============================================================
    # Project Operations
    # ============================================================

    @abstractmethod
    async def insert_project(self, project: Project) -> None:
        """Store a new project."""
        ...

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        """Get project by ID."""
        ...

    @abstractmethod
    async def list_projects(
        self,
        status: Optional[StatusSpec] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Project]:
        """List projects, newest first."""
        ...

    @abstractmethod
    async def find_expired_bidding(self, now: datetime, limit: int = 500) -> list[Project]:
        """Projects still in bidding whose deadline is at or before ``now``."""
        ...

    @abstractmethod
    async def conditional_update_project_status(
        self,
        project_id: str,
        expected_status: StatusSpec,
        fields: dict[str, Any],
    ) -> int:
        """Set ``fields`` where id matches and status is ``expected_status``.

        Returns the number of rows changed (0 or 1).
        """
        ...

    @abstractmethod
    async def delete_project(self, project_id: str, allowed_statuses: StatusSpec) -> int:
        """Delete a project and its bids if its status is allowed."""
        ...

    # ============================================================
    # Bid Operations
    # ============================================================

    @abstractmethod
    async def insert_bid(self, bid: Bid) -> None:
        """Store a new bid.

        Raises:
            UniqueViolation: the bidder already has a bid on the project
        """
        ...

    @abstractmethod
    async def get_bid(self, bid_id: str) -> Optional[Bid]:
        """Get bid by ID."""
        ...

    @abstractmethod
    async def list_bids_by_project(
        self,
        project_id: str,
        status: Optional[StatusSpec] = None,
    ) -> list[Bid]:
        """Bids for a project in submission order."""
        ...

    @abstractmethod
    async def conditional_update_bid(
        self,
        bid_id: str,
        expected_status: StatusSpec,
        fields: dict[str, Any],
    ) -> int:
        """Set ``fields`` on a bid whose status is ``expected_status``."""
        ...

    # ============================================================
    # Cascades
    # ============================================================

    @abstractmethod
    async def apply_award(
        self,
        project_id: str,
        bid_id: str,
        expected_status: StatusSpec,
        project_fields: dict[str, Any],
        now: datetime,
    ) -> bool:
        """Award cascade, all or nothing.

        - project (status ``expected_status``) gets ``project_fields``
        - bid ``bid_id`` (pending, same project) becomes won
        - every other pending bid of the project becomes lost

        Returns False, changing nothing, if either guard does not match.
        """
        ...

    @abstractmethod
    async def apply_reset(
        self,
        project_id: str,
        expected_status: StatusSpec,
        now: datetime,
    ) -> bool:
        """Return a project to draft and its won/lost bids to pending."""
        ...

    # ============================================================
    # Lifecycle
    # ============================================================

    async def setup_indexes(self) -> None:
        """Create indexes / constraints. No-op for stores without them."""
        pass

    async def close(self) -> None:
        """Clean up resources."""
        pass
