"""Tests for the error envelope format and error code mapping.

Error responses share one stable shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from hydroline_identity.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from hydroline_identity.api.schemas import Envelope, ErrorBody
from hydroline_identity.service import errors


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_dict(self):
        error = ErrorBody(
            code="validation_error",
            message="Invalid input",
            details={"field": "email", "reason": "invalid format"},
        )
        assert error.details == {"field": "email", "reason": "invalid format"}

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_unknown_code_raises(self):
        """Codes outside the stable set are rejected."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize(
        "code",
        [
            "binding_conflict",
            "channel_exclusive",
            "key_exists",
            "in_use",
            "last_contact_retained",
            "permissions_not_found",
            "service_unavailable",
        ],
    )
    def test_domain_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_error_status(self):
        error_body = ErrorBody(code="unauthorized", message="Invalid token")
        envelope = Envelope(status="error", error=error_body)

        assert envelope.status == "error"
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})

        assert envelope.status == "ok"
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """Tests for HTTP status to stable error code mapping."""

    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_status_mapping(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"  # I'm a teapot
        assert _error_code_for_status(999) == "server_error"

    def test_generic_codes_covered(self):
        expected_codes = {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
            "service_unavailable",
        }
        assert set(_STATUS_TO_CODE.values()) == expected_codes


class TestServiceErrorCodes:
    """Every service exception carries a code the envelope accepts."""

    @pytest.mark.parametrize(
        "exc,status_code,code",
        [
            (errors.ValidationError("x"), 400, "validation_error"),
            (errors.BusinessRuleError("x", "AUTHME_NOT_BOUND"), 400, "validation_error"),
            (errors.AuthenticationError("x"), 401, "unauthorized"),
            (errors.ForbiddenError("x"), 403, "forbidden"),
            (errors.LastContactRetainedError("x"), 403, "last_contact_retained"),
            (errors.NotFoundError("x"), 404, "not_found"),
            (errors.PermissionsNotFoundError(["a"]), 404, "permissions_not_found"),
            (errors.ConflictError("x"), 409, "conflict"),
            (errors.BindingConflictError("x"), 409, "binding_conflict"),
            (errors.ChannelExclusiveError("x"), 409, "channel_exclusive"),
            (errors.KeyExistsError("x"), 409, "key_exists"),
            (errors.InUseError("x"), 409, "in_use"),
            (errors.RateLimitedError("x"), 429, "rate_limited"),
            (errors.ServerError("x"), 500, "server_error"),
            (errors.ServiceUnavailableError("x"), 503, "service_unavailable"),
        ],
    )
    def test_codes(self, exc, status_code, code):
        assert exc.status_code == status_code
        assert exc.error_code == code
        ErrorBody(code=exc.error_code, message=exc.message)

    def test_business_rule_code_in_detail(self):
        exc = errors.BusinessRuleError("x", "AUTHME_NOT_BOUND", detail={"username": "Steve"})
        assert exc.detail == {"username": "Steve", "code": "AUTHME_NOT_BOUND"}


class TestErrorResponseFactory:
    """Tests for the _error_response helper function."""

    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert "request_id" in data

    def test_error_response_with_details(self):
        response = _error_response(
            400,
            "Validation failed",
            details={"field": "email", "error": "required"},
        )
        data = json.loads(response.body.decode())
        assert data["error"]["details"] == {"field": "email", "error": "required"}

    def test_error_response_custom_code(self):
        response = _error_response(409, "Already bound", code="binding_conflict")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "binding_conflict"

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)

        assert response.status_code == 404
        data = json.loads(response.body.decode())
        assert data["error"]["details"] is None
