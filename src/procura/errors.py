"""Typed errors raised by the lifecycle engine and its collaborators.

Each error carries the HTTP status the API layer answers with and a short
machine-readable ``code``. Lost races on idempotent transitions are not
errors; they come back as ``noop`` results (see ``models.TransitionResult``).
"""

from typing import Any, Optional


class ProcuraError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        body = {"error": self.code, "detail": self.message}
        if self.context:
            body["context"] = self.context
        return body


class ValidationError(ProcuraError):
    """Malformed input, e.g. a non-positive amount."""
    status_code = 400
    code = "validation_error"


class NotFound(ProcuraError):
    """Missing project or bid."""
    status_code = 404
    code = "not_found"


class InvalidStateTransition(ProcuraError):
    """The current status does not allow the requested operation."""
    status_code = 409
    code = "invalid_state_transition"

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        operation: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, current=current, operation=operation, **context)
        self.current = current
        self.operation = operation


class DuplicateBid(ProcuraError):
    """The bidder already has a bid on this project."""
    status_code = 409
    code = "duplicate_bid"


class DeadlinePassed(ProcuraError):
    """The bidding deadline is in the past."""
    status_code = 409
    code = "deadline_passed"


class AccessDenied(ProcuraError):
    """Caller does not own the resource or lacks the role."""
    status_code = 403
    code = "access_denied"


class DuplicateRating(ProcuraError):
    """The rater already rated this project."""
    status_code = 409
    code = "duplicate_rating"
