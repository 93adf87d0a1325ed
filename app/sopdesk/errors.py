"""
Errors raised by the working-copy workflow.

Every one of these is raised before anything is written, so the caller can
roll back and retry or report. The HTTP layer maps them to status codes.
"""

from __future__ import annotations


class WorkflowError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class NotFound(WorkflowError):
    """Referenced document, working copy or review does not exist."""

    kind = "not_found"
    status_code = 404


class Forbidden(WorkflowError):
    """Actor is not the owner/reviewer the operation requires."""

    kind = "forbidden"
    status_code = 403


class Conflict(WorkflowError):
    """Duplicate working copy, or a stale revision token."""

    kind = "conflict"
    status_code = 409


class Invalid(WorkflowError):
    """Operation is not valid in the current state."""

    kind = "invalid"
    status_code = 422
