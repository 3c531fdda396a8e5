"""Error taxonomy for taskrelay.

Every error the core reports to a caller derives from TaskRelayError and
carries a stable machine-readable ``code`` plus the HTTP status the web
boundary answers with. None of these are fatal: callers decide whether to
re-read state and retry.

    ValidationError        malformed input, never worth retrying
    InvalidStateError      transition attempted from the wrong source state
    ConflictError          lost a concurrency race or resource is not available
    AlreadyTakenError      another worker accepted the task first
    NotFoundError          unknown id
    AuthenticationError    missing, unknown or expired session token
    PermissionDeniedError  actor may not act on this resource
    StoreError             persistence failure; nothing was committed
"""

from __future__ import annotations


class TaskRelayError(Exception):
    """Base class for all reported errors.

    Attributes:
        message: Human-readable description.
        code: Stable error code for API consumers.
        status_code: HTTP status used by the web layer.
    """

    code = "TASKRELAY_ERROR"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        """Serialize the error for an API response body."""
        return {"code": self.code, "message": self.message}


class ValidationError(TaskRelayError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidStateError(TaskRelayError):
    """Raised when an operation is attempted from the wrong source state.

    Attributes:
        entity_id: ID of the task or extension request involved.
        current: Status observed in the store.
        attempted: Name of the attempted operation or target status.
    """

    code = "INVALID_STATE"
    status_code = 409

    def __init__(self, entity_id: str, current: str, attempted: str):
        self.entity_id = entity_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} {entity_id}: current status is {current}"
        )


class ConflictError(TaskRelayError):
    code = "CONFLICT"
    status_code = 409


class AlreadyTakenError(ConflictError):
    """Raised to the loser of a race to accept the same pending task."""

    code = "ALREADY_TAKEN"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} has already been taken")


class NotFoundError(TaskRelayError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: str | None = None):
        self.resource = resource
        self.resource_id = resource_id
        if resource_id is not None:
            super().__init__(f"{resource} {resource_id} not found")
        else:
            super().__init__(f"{resource} not found")


class AuthenticationError(TaskRelayError):
    code = "UNAUTHENTICATED"
    status_code = 401


class PermissionDeniedError(TaskRelayError):
    code = "FORBIDDEN"
    status_code = 403


class StoreError(TaskRelayError):
    """Persistence layer failure.

    The enclosing transaction has been rolled back, so the operation
    committed nothing and may be retried.
    """

    code = "STORE_ERROR"
    status_code = 503
