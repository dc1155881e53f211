"""Tests for the error envelope models and status-to-code mapping."""

import pytest
from pydantic import ValidationError

from taskauth.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from taskauth.api.schemas import Envelope, ErrorBody
from taskauth.logging import set_correlation_id
from taskauth.service.errors import (
    AccountLockedError,
    RateLimitedError,
    ServiceError,
    StoreUnavailableError,
    TokenReuseDetectedError,
    UserExistsError,
)


class TestErrorBody:
    def test_known_code(self):
        error = ErrorBody(code="TOKEN_EXPIRED", message="Access token has expired")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_lower_case_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="not_found", message="Resource not found")

    def test_list_details(self):
        error = ErrorBody(
            code="VALIDATION_ERROR",
            message="Validation failed",
            details=[{"field": "email", "message": "invalid"}],
        )
        assert error.details[0]["field"] == "email"


class TestEnvelope:
    def test_ok_envelope(self):
        envelope = Envelope(status="ok", data={"message": "done"})
        assert envelope.error is None
        assert len(envelope.request_id) == 36

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestStatusMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "AUTH_REQUIRED"
        assert _error_code_for_status(404) == "NOT_FOUND"
        assert _error_code_for_status(429) == "RATE_LIMIT_EXCEEDED"
        assert _error_code_for_status(503) == "STORE_UNAVAILABLE"

    def test_fallbacks(self):
        assert _error_code_for_status(418) == "VALIDATION_ERROR"
        assert _error_code_for_status(502) == "SERVER_ERROR"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestServiceErrors:
    """Status codes and codes pinned on the service exceptions."""

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (AccountLockedError("locked"), 423, "ACCOUNT_LOCKED"),
            (TokenReuseDetectedError("reuse"), 401, "TOKEN_REUSE_DETECTED"),
            (UserExistsError("dup", detail={"field": "email"}), 409, "USER_EXISTS"),
            (StoreUnavailableError("down"), 503, "STORE_UNAVAILABLE"),
            (RateLimitedError("slow down", retry_after=30), 429, "RATE_LIMIT_EXCEEDED"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code
        ErrorBody(code=exc.error_code, message=exc.message, details=exc.detail)

    def test_overrides(self):
        exc = ServiceError("custom", status_code=418, error_code="CONFLICT", detail={"a": 1})
        assert exc.status_code == 418
        assert exc.error_code == "CONFLICT"
        assert exc.detail == {"a": 1}

    def test_rate_limited_detail(self):
        exc = RateLimitedError("slow down", retry_after=12, detail={"route": "login"})
        assert exc.detail == {"route": "login", "retryAfter": 12}


class TestErrorResponse:
    def test_uses_correlation_id(self):
        set_correlation_id("corr-1")
        resp = _error_response(401, "Access token is required", code="TOKEN_MISSING")
        assert resp.status_code == 401
        assert b'"request_id":"corr-1"' in resp.body
        assert b'"code":"TOKEN_MISSING"' in resp.body

    def test_headers_passed_through(self):
        resp = _error_response(429, "Too many", {"retryAfter": 5}, headers={"Retry-After": "5"})
        assert resp.headers["Retry-After"] == "5"
