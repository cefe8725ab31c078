"""Tests for the error envelope and request schemas.

Error responses share one shape:
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
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from bookpath.api.error_handling import _error_code_for_status, _error_response
from bookpath.api.schemas import (
    Envelope,
    ErrorBody,
    LoginRequest,
    RegisterRequest,
    UserResponse,
)
from bookpath.service.errors import AccountLockedError
from bookpath.storage.models import Principal


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_known_code_is_accepted(self):
        error = ErrorBody(code="account_locked", message="locked", details={"retry_after": 5})

        assert error.details == {"retry_after": 5}

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_generates_request_id(self):
        envelope = Envelope(status="ok", data={"x": 1})

        assert envelope.request_id
        assert envelope.error is None


class TestErrorResponse:
    """Tests for the JSON response builder."""

    @pytest.mark.parametrize(
        "status,code",
        [(400, "validation_error"), (401, "unauthorized"), (402, "subscription_required"),
         (403, "forbidden"), (405, "method_not_allowed"), (413, "payload_too_large"),
         (415, "unsupported_media_type"), (429, "rate_limited"), (503, "store_unavailable"),
         (418, "server_error")],
    )
    def test_status_maps_to_stable_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_account_locked_carries_retry_after(self):
        now = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)
        exc = AccountLockedError(now + timedelta(seconds=90), now=now)

        response = _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=exc.headers
        )

        body = json.loads(response.body)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "90"
        assert body["status"] == "error"
        assert body["error"]["code"] == "account_locked"
        assert body["error"]["details"]["unlock_at"] == "2025-03-14T12:01:30+00:00"

    @pytest.mark.parametrize("status", [405, 413, 415])
    def test_client_error_codes_build_valid_envelopes(self, status):
        response = _error_response(status, "nope")

        assert json.loads(response.body)["error"]["code"] != "server_error"

    def test_retry_after_is_at_least_one_second(self):
        now = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)

        assert AccountLockedError(now, now=now).retry_after == 1


class TestRequestSchemas:
    """Tests for request normalisation."""

    def test_email_is_normalised(self):
        body = RegisterRequest(
            email="  Reader@Example.COM ", username="reader", password="x"
        )

        assert body.email == "reader@example.com"

    def test_zero_width_characters_are_stripped(self):
        body = LoginRequest(email="rea\u200bder@example.com", password="x")

        assert body.email == "reader@example.com"

    @pytest.mark.parametrize("username", ["ab", "has space", "x" * 33, "semi;colon"])
    def test_bad_usernames_are_rejected(self, username):
        with pytest.raises(ValidationError):
            RegisterRequest(email="reader@example.com", username=username, password="x")

    def test_totp_code_must_be_six_digits(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="reader@example.com", password="x", totp_code="12ab56")

    def test_overlong_password_is_rejected(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="reader@example.com", password="x" * 129)


class TestUserResponse:
    """Tests for the public principal view."""

    def test_secrets_are_not_exposed(self):
        principal = Principal.new("reader@example.com", "reader", "$argon2id$hash")
        principal.two_factor_secret = "JBSWY3DPEHPK3PXP"

        dumped = UserResponse.from_principal(principal).model_dump()

        assert "password_hash" not in dumped
        assert "two_factor_secret" not in dumped
        assert "$argon2id$hash" not in json.dumps(dumped, default=str)
