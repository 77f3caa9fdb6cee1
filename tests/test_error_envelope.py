"""Error envelope format and the mapping of service errors to HTTP responses.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from warden.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from warden.api.schemas import Envelope, ErrorBody
from warden.logging import set_correlation_id
from warden.service import errors


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_details_list(self):
        error = ErrorBody(code="validation_error", message="Multiple errors", details=[{"f": 1}, {"f": 2}])
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    @pytest.mark.parametrize(
        "exc",
        [
            errors.ValidationError("x"),
            errors.UsernameTakenError("x"),
            errors.InvalidCredentialsError(),
            errors.IncorrectPasswordError(),
            errors.InvalidTokenError(),
            errors.LockedOutError(3),
            errors.InvalidStateError(),
            errors.ExchangeFailedError(),
            errors.ProfileFetchFailedError(),
            errors.AuthDisabledError(),
            errors.ForbiddenError("x"),
            errors.NotFoundError("x"),
            errors.OAuthNotConfiguredError("x"),
            errors.ServerError("x"),
        ],
    )
    def test_every_service_error_code_is_valid(self, exc):
        ErrorBody(code=exc.error_code, message=exc.message)


class TestStatusMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(429) == "rate_limited"
        assert _error_code_for_status(501) == "not_configured"

    def test_unknown_status_falls_back(self):
        assert _error_code_for_status(418) == "server_error"

    def test_all_mapped_codes_are_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="m")


class TestErrorResponse:
    def test_shape(self):
        response = _error_response(404, "missing", {"id": "1"}, code="not_found")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "1"}}
        assert body["data"] is None

    def test_request_id_uses_correlation_id(self):
        set_correlation_id("corr-42")
        body = json.loads(_error_response(500, "boom").body)
        assert body["request_id"] == "corr-42"
        assert body["error"]["code"] == "server_error"

    def test_headers_passed_through(self):
        response = _error_response(429, "slow down", code="locked_out", headers={"Retry-After": "60"})
        assert response.headers["retry-after"] == "60"


class TestServiceErrors:
    def test_locked_out_carries_minutes(self):
        exc = errors.LockedOutError(7)
        assert exc.status_code == 429
        assert exc.remaining_minutes == 7
        assert exc.detail == {"remaining_minutes": 7}

    def test_oauth_errors_share_generic_message(self):
        messages = {
            errors.InvalidStateError().message,
            errors.ExchangeFailedError("provider_rejected").message,
            errors.ProfileFetchFailedError("network").message,
        }
        assert messages == {"sign-in with provider failed"}

    def test_oauth_errors_keep_reason(self):
        assert errors.ExchangeFailedError("nonce_mismatch").reason == "nonce_mismatch"

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
