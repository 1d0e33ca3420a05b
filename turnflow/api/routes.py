from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Path, Response
from pydantic import ValidationError as PydanticValidationError

from turnflow.api.schemas import (
    Envelope,
    LockReleaseResponse,
    PendingTurnResponse,
    QueueResponse,
    TurnAcceptedResponse,
    TurnLockResponse,
    WorkflowRunRequest,
    WorkflowRunResponse,
)
from turnflow.logging import get_logger, sanitize_workflow_trace
from turnflow.service.errors import NotFoundError, ValidationError
from turnflow.service.runtime import get_runtime
from turnflow.service.workflow import WorkflowResult
from turnflow.service.workflow_schema import WorkflowDefinition, coerce_workflow
from turnflow.storage.models import utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _parse_workflow(raw: Dict[str, Any]) -> WorkflowDefinition:
    try:
        return coerce_workflow(raw)
    except PydanticValidationError as exc:
        details = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg")}
            for err in exc.errors()
        ]
        raise ValidationError("invalid workflow definition", detail={"errors": details})


def _turn_key(body: WorkflowRunRequest, workflow: WorkflowDefinition) -> str:
    if body.key:
        return body.key
    if workflow.id:
        return workflow.id
    # Ad-hoc runs with no identity still get their own key
    return f"temp-{uuid4()}"


def _result_payload(result: WorkflowResult) -> WorkflowRunResponse:
    return WorkflowRunResponse(
        output=result.output,
        context=result.context,
        trace=sanitize_workflow_trace(result.trace),
    )


@router.get("/queues", response_model=Envelope, tags=["turns"])
async def list_queues():
    runtime = get_runtime()
    now = utcnow()
    stale_after = runtime.gate.stale_after_seconds
    locks = [
        TurnLockResponse(
            key=lock.key,
            started_at=lock.started_at,
            created_at=lock.created_at,
            age_seconds=round(lock.age_seconds(now), 3),
            stale=lock.is_stale(stale_after, now=now),
        )
        for lock in runtime.store.list_turn_locks()
    ]
    pending = [
        PendingTurnResponse(turn_id=turn.turn_id, key=turn.key, created_at=turn.created_at)
        for turn in runtime.turn_jobs.pending()
    ]
    return Envelope(status="ok", data=QueueResponse(turn_locks=locks, pending_turns=pending))


@router.delete("/locks/{key}", response_model=Envelope, tags=["turns"])
async def force_release_lock(key: str = Path(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    released = runtime.gate.release(key)
    if not released:
        raise NotFoundError("turn lock not found", detail={"key": key})
    logger.warning("turn_lock_force_released", key=key)
    return Envelope(status="ok", data=LockReleaseResponse(key=key, released=True))


@router.post("/workflows/run", response_model=Envelope, tags=["workflows"])
async def run_workflow(body: WorkflowRunRequest, response: Response):
    runtime = get_runtime()
    workflow = _parse_workflow(body.workflow)
    key = _turn_key(body, workflow)
    initial_context: Optional[Dict[str, Any]] = body.initial_context

    if body.background:
        async def _job() -> WorkflowResult:
            return await runtime.run_workflow_turn(key, workflow, initial_context)

        turn_id = runtime.turn_jobs.register(key, _job)
        runtime.turn_jobs.schedule_fallback(turn_id)
        response.status_code = 202
        return Envelope(status="ok", data=TurnAcceptedResponse(turn_id=turn_id, key=key))

    # Fast path: claim the key directly, fall back to waiting through the gate
    already_locked = runtime.gate.try_lock(key)
    result = await runtime.run_workflow_turn(
        key, workflow, initial_context, already_locked=already_locked
    )
    return Envelope(status="ok", data=_result_payload(result))


@router.post("/turns/{turn_id}/start", response_model=Envelope, tags=["turns"])
async def start_turn(turn_id: str = Path(..., min_length=1, max_length=64)):
    runtime = get_runtime()
    pending = runtime.turn_jobs.take(turn_id)
    if pending is None:
        raise NotFoundError("turn not pending", detail={"turn_id": turn_id})
    logger.info("turn_claimed", turn_id=turn_id, key=pending.key)
    result = await pending.job()
    return Envelope(status="ok", data=_result_payload(result))
