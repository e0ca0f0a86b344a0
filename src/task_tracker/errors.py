"""
Typed errors raised by the task engine.

Each error carries the HTTP status code and a machine-readable kind so the
API layer can build the response envelope without inspecting messages.
"""

from typing import Optional, Dict, Any, List


class TaskTrackerError(Exception):
    """Base class for all engine errors."""

    status_code = 500
    kind = "server_error"

    def __init__(self, message: str, *, kind: Optional[str] = None,
                 details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.details = details or []


class ValidationError(TaskTrackerError):
    """Malformed or missing input; ``details`` holds per-field entries."""

    status_code = 400
    kind = "validation_error"

    @classmethod
    def for_field(cls, field: str, message: str, value: Any = None) -> "ValidationError":
        return cls(message, details=[{"field": field, "message": message, "value": value}])


class AuthenticationError(TaskTrackerError):
    """No active principal could be resolved for the request."""

    status_code = 401
    kind = "authentication_required"


class ForbiddenError(TaskTrackerError):
    """Authorization policy denial; ``kind`` is the policy reason code."""

    status_code = 403
    kind = "forbidden"


class NotFoundError(TaskTrackerError):
    status_code = 404
    kind = "not_found"


class ConflictError(TaskTrackerError):
    """Domain-state violation such as a double start or a stop without a session."""

    status_code = 400
    kind = "conflict"


ALREADY_ACTIVE = "already_active"
NO_ACTIVE_SESSION = "no_active_session"
CONCURRENT_MODIFICATION = "concurrent_modification"


class ServerError(TaskTrackerError):
    """Unexpected persistence or runtime failure. The message is safe to expose."""

    status_code = 500
    kind = "server_error"
