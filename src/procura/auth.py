"""Caller identity and access checks for the HTTP layer.

Authentication happens upstream: the auth proxy forwards the caller as
``X-User-Id`` and ``X-User-Role``. This module only turns those headers into
an ``Actor`` and answers ownership questions before the engine is called.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

from .errors import AccessDenied
from .models import Bid, Project, Role


@dataclass
class Actor:
    """Authenticated caller."""
    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def owns(self, project: Project) -> bool:
        return self.is_admin or project.owner_id == self.user_id


async def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    """FastAPI dependency that requires identity headers."""
    if not x_user_id or not x_user_role:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. X-User-Id and X-User-Role headers are missing.",
        )
    try:
        role = Role(x_user_role)
    except ValueError:
        raise AccessDenied(f"Unknown role: {x_user_role}")
    return Actor(user_id=x_user_id, role=role)


def require_role(*roles: Role):
    """Factory for a dependency that only lets the given roles through.

    Admins always pass.

    Usage:
        @router.post("/api/projects")
        async def create_project(actor: Actor = Depends(require_role(Role.PROJECT_MANAGER))):
            ...
    """
    async def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if not actor.is_admin and actor.role not in roles:
            raise AccessDenied(
                "Insufficient role for this operation",
                role=actor.role.value,
                allowed=[r.value for r in roles],
            )
        return actor

    return dependency


require_admin = require_role(Role.ADMIN)


def check_owner(actor: Actor, project: Project) -> None:
    if not actor.owns(project):
        raise AccessDenied("You don't own this project", project_id=project.id)


def check_bidder(actor: Actor, bid: Bid) -> None:
    if not actor.is_admin and bid.bidder_id != actor.user_id:
        raise AccessDenied("You don't own this bid", bid_id=bid.id)
