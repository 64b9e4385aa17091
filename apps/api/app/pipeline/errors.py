from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for failures returned by pipeline operations."""

    code = "pipeline_error"
    status_code = 400

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(PipelineError):
    code = "not_found"
    status_code = 404


class FieldValidationError(PipelineError):
    """Raised when required lead fields are missing or malformed."""

    code = "validation_error"
    status_code = 422


class ForbiddenError(PipelineError):
    code = "forbidden"
    status_code = 403


class NoOpMoveError(PipelineError):
    code = "no_op_move"
    status_code = 422


class InvalidStateError(PipelineError):
    """Raised when a gated operation is invoked from a state that does not allow it."""

    code = "invalid_state"
    status_code = 409


class ConflictError(PipelineError):
    """Raised when the lead changed between read and commit."""

    code = "conflict"
    status_code = 409


class PersistenceError(PipelineError):
    code = "persistence_error"
    status_code = 503
