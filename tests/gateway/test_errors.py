"""Tests for the gateway error taxonomy."""

import pytest

from relaygate.gateway.errors import (
    Forbidden,
    InvalidRequest,
    RateLimited,
    Unauthenticated,
    UnknownContentType,
    UnsupportedFormat,
    UpstreamError,
    error_type_for,
)


class TestErrorBody:
    """Tests for the JSON error shape."""

    @pytest.mark.parametrize(
        ("status", "error_type"),
        [
            (400, "invalid_request_error"),
            (401, "authentication_error"),
            (403, "permission_error"),
            (404, "not_found_error"),
            (413, "request_too_large"),
            (429, "rate_limit_error"),
            (500, "api_error"),
            (503, "api_error"),
        ],
    )
    def test_error_type_for_status(self, status, error_type):
        assert error_type_for(status) == error_type

    def test_gateway_error_shape(self):
        assert Unauthenticated("API key is required").to_dict() == {
            "error": {
                "message": "API key is required",
                "type": "authentication_error",
                "status": 401,
            }
        }

    def test_transform_errors_are_client_errors(self):
        """Transform failures surface as 400 invalid requests."""
        for exc in (UnsupportedFormat("x"), UnknownContentType("y")):
            assert isinstance(exc, InvalidRequest)
            assert exc.status == 400

    def test_rate_limited_carries_retry_after(self):
        exc = RateLimited("slow down", retry_after=12)

        assert exc.status == 429
        assert exc.retry_after == 12
        assert exc.to_dict()["error"]["type"] == "rate_limit_error"

    def test_forbidden(self):
        assert Forbidden("Forbidden").to_dict()["error"]["status"] == 403


class TestUpstreamError:
    """Tests for retry classification."""

    @pytest.mark.parametrize(
        ("status", "retryable"),
        [(None, True), (500, True), (503, True), (400, False), (404, False), (429, False)],
    )
    def test_retryable(self, status, retryable):
        assert UpstreamError("boom", status).retryable is retryable

    def test_transport_failure_reports_502(self):
        body = UpstreamError("connection refused").to_dict()

        assert body["error"]["status"] == 502
        assert body["error"]["type"] == "api_error"
