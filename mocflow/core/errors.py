"""Typed errors raised by the workflow engine.

Every error is recoverable and reported back to the caller. The API layer
maps ``code`` and ``http_status`` onto its JSON error responses.
"""

from typing import Optional


class MocflowError(Exception):
    """Base class for workflow engine errors."""

    code = "error"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(MocflowError):
    """A referenced change request, user or department does not exist."""

    code = "not_found"
    http_status = 404


class PermissionDeniedError(MocflowError):
    """The acting user lacks the role required for the operation."""

    code = "permission_denied"
    http_status = 403

    def __init__(self, message: str, required_role: Optional[str] = None):
        super().__init__(message)
        self.required_role = required_role


class InvalidStatusError(MocflowError):
    """Unknown status value, or an operation not allowed from the current status."""

    code = "invalid_status"
    http_status = 409

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
    ):
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class AlreadyProcessedError(InvalidStatusError):
    """The request has already moved past the stage the action targets."""

    code = "already_processed"


class InvalidTransitionError(PermissionDeniedError, InvalidStatusError):
    """No transition rule exists between the two states for a non-admin actor."""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, message: str, current_status: str, requested_status: str):
        MocflowError.__init__(self, message)
        self.required_role = None
        self.current_status = current_status
        self.requested_status = requested_status


class ValidationError(MocflowError):
    """Malformed input: unknown fields, missing comments, bad references."""

    code = "validation_error"
    http_status = 422


class ConflictError(MocflowError):
    """A concurrent writer kept winning; the operation gave up after retrying."""

    code = "conflict"
    http_status = 409
