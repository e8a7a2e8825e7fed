"""Domain exceptions for the budget workflow.

Every error carries the HTTP status it maps to; ``budgetflow.main`` renders
them as ``{"error": message}`` bodies.
"""

from typing import Any


class WorkflowError(Exception):
    """Base exception for workflow errors."""

    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message}


class ValidationError(WorkflowError):
    """Malformed body, missing field, bad enum value or negative amount."""

    status_code = 400
    default_message = "Invalid request"


class AuthenticationError(WorkflowError):
    """Missing or invalid bearer token."""

    status_code = 401
    default_message = "Authentication required"


class ForbiddenError(WorkflowError):
    """Role mismatch, or the current step is owned by another department."""

    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(WorkflowError):
    """Identifier does not exist or lies outside the caller's scope."""

    status_code = 404
    default_message = "Not found"


class ConflictError(WorkflowError):
    """Unique key violation, strict sync overlap or edit of an approved request."""

    status_code = 409
    default_message = "Conflict"

    def __init__(
        self,
        message: str | None = None,
        conflicts: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.conflicts = conflicts

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.conflicts is not None:
            body["conflicts"] = self.conflicts
        return body


class InvariantViolation(WorkflowError):
    """Internal state breaks a ledger invariant (e.g. two current steps)."""

    status_code = 500
    default_message = "Workflow invariant violated"
