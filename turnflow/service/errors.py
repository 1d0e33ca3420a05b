from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - missing_handler (400)
    - not_found (404)
    - conflict (409)
    - lock_timeout (409)
    - cancelled (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class LockTimeoutError(ConflictError):
    """Waited past the deadline for another turn on the same key (409).

    Raised before the guarded work ever runs; no lock row is touched.
    """
    error_code = "lock_timeout"

    def __init__(self, key: str, waited_seconds: float) -> None:
        super().__init__(
            f"Timed out after {waited_seconds:.1f}s waiting for turn lock on {key}",
            detail={"key": key, "waited_seconds": round(waited_seconds, 3)},
        )
        self.key = key
        self.waited_seconds = waited_seconds


class MissingHandlerError(ServiceError):
    """A workflow node's type has no registered handler (400)."""
    status_code = 400
    error_code = "missing_handler"

    def __init__(self, node_type: str, node_id: Optional[str] = None) -> None:
        super().__init__(
            f"No handler for workflow node type {node_type}",
            detail={"node_type": node_type, "node_id": node_id},
        )
        self.node_type = node_type
        self.node_id = node_id


class WorkflowCancelledError(ConflictError):
    """The caller's cancel signal was set while the run was in progress (409)."""
    error_code = "cancelled"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "LockTimeoutError",
    "MissingHandlerError",
    "WorkflowCancelledError",
    "ServerError",
]
