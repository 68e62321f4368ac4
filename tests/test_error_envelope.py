"""Error responses share one envelope shape:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from nodecascade.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from nodecascade.api.schemas import Envelope, ErrorBody
from nodecascade.logging import correlation_id_var, set_correlation_id


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="not_found", message="Submission not found")
        assert error.code == "not_found"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"loc": ["body", "companyId"]}, {"loc": ["body", "submissionId"]}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="unauthorized", message="nope")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="conflict", message="stale"))
        assert envelope.error.code == "conflict"
        assert envelope.data is None

    def test_envelope_request_id_follows_correlation_id(self):
        set_correlation_id("corr-42")
        try:
            assert Envelope(status="ok").request_id == "corr-42"
        finally:
            correlation_id_var.set(None)

    def test_envelope_request_id_custom(self):
        assert Envelope(status="ok", request_id="custom-id-123").request_id == "custom-id-123"

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="conflict", message="version changed", details={"actual_version": 3}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["actual_version"] == 3
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(400) == "validation_error"
        assert _error_code_for_status(422) == "validation_error"
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(500) == "server_error"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_only_uses_valid_codes(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "validation_error",
            "not_found",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(404, "node output not found")

        assert response.status_code == 404
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "not_found"
        assert data["error"]["details"] is None
        assert "request_id" in data

    def test_error_response_custom_code(self):
        response = _error_response(500, "COMPLETION_API_KEY not configured", code="configuration_error")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "configuration_error"

    def test_error_response_list_details(self):
        response = _error_response(400, "invalid request", details=[{"loc": ["a"]}, {"loc": ["b"]}])
        data = json.loads(response.body.decode())
        assert len(data["error"]["details"]) == 2
