"""
Typed failures returned by the review workflow.

Every failure carries a stable ``code`` plus a ``details`` dict so callers can
render an actionable message (which rule failed, what the current state is).
"""
from __future__ import annotations

from typing import Any


class WorkflowError(RuntimeError):
    code = "workflow_error"
    http_status = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFound(WorkflowError):
    code = "not_found"
    http_status = 404


class Unauthorized(WorkflowError):
    code = "unauthorized"
    http_status = 403


class InvalidTransition(WorkflowError):
    code = "invalid_transition"
    http_status = 409


class ValidationError(WorkflowError):
    code = "validation_error"
    http_status = 400


class ConflictError(WorkflowError):
    code = "conflict"
    http_status = 409
