from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Maximum nested JSON depth accepted in workflow bodies
MAX_JSON_DEPTH = 20
# Maximum array items, applied to nodes, edges and execution order alike
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON before it reaches the engine.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "missing_handler",
    "not_found",
    "conflict",
    "lock_timeout",
    "cancelled",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class WorkflowRunRequest(BaseModel):
    workflow: Dict[str, Any]
    key: Optional[str] = Field(
        default=None,
        max_length=256,
        description="Turn key (conversation or workflow instance); defaults to the workflow id",
    )
    initial_context: Optional[Dict[str, Any]] = None
    background: bool = False

    model_config = ConfigDict(extra="forbid")

    @field_validator("workflow", "initial_context")
    @classmethod
    def _validate_depth(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            _validate_json_depth(value)
        return value


class WorkflowRunResponse(BaseModel):
    output: Any = None
    context: Dict[str, Any] = Field(default_factory=dict)
    trace: List[Dict[str, Any]] = Field(default_factory=list)


class TurnAcceptedResponse(BaseModel):
    turn_id: str
    key: str


class TurnLockResponse(BaseModel):
    key: str
    started_at: datetime
    created_at: datetime
    age_seconds: float
    stale: bool


class PendingTurnResponse(BaseModel):
    turn_id: str
    key: str
    created_at: datetime


class QueueResponse(BaseModel):
    turn_locks: List[TurnLockResponse] = Field(default_factory=list)
    pending_turns: List[PendingTurnResponse] = Field(default_factory=list)


class LockReleaseResponse(BaseModel):
    key: str
    released: bool
