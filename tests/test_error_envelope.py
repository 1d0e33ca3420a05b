"""Error responses share one envelope:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from turnflow.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from turnflow.api.schemas import Envelope, ErrorBody, WorkflowRunRequest
from turnflow.service.errors import (
    LockTimeoutError,
    MissingHandlerError,
    NotFoundError,
    ServiceError,
    WorkflowCancelledError,
)


class TestErrorBody:
    def test_domain_codes_are_accepted(self):
        for code in ("lock_timeout", "missing_handler", "cancelled"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id


class TestErrorResponse:
    def test_status_mapping(self):
        assert _STATUS_TO_CODE[409] == "conflict"
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(418) == "server_error"

    def test_explicit_code_overrides_status(self):
        resp = _error_response(409, "busy", {"key": "k"}, code="lock_timeout")
        body = json.loads(resp.body)

        assert resp.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {"code": "lock_timeout", "message": "busy", "details": {"key": "k"}}


class TestServiceErrors:
    def test_lock_timeout(self):
        err = LockTimeoutError("conv-1", 60.0)
        assert err.status_code == 409
        assert err.error_code == "lock_timeout"
        assert err.detail == {"key": "conv-1", "waited_seconds": 60.0}

    def test_missing_handler(self):
        err = MissingHandlerError("agent", "node-1")
        assert str(err) == "No handler for workflow node type agent"
        assert err.status_code == 400

    def test_cancelled_is_conflict(self):
        err = WorkflowCancelledError("stop")
        assert err.status_code == 409
        assert err.error_code == "cancelled"

    def test_overrides(self):
        err = ServiceError("custom", status_code=500, error_code="server_error")
        assert err.status_code == 500
        assert NotFoundError("gone").error_code == "not_found"


def test_workflow_request_rejects_deep_nesting():
    nested = {}
    cursor = nested
    for _ in range(30):
        cursor["next"] = {}
        cursor = cursor["next"]

    with pytest.raises(ValidationError):
        WorkflowRunRequest(workflow=nested)
