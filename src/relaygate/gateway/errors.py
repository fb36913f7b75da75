"""Shared error definitions for the gateway.

Every failure that reaches a client is rendered as::

    {"error": {"message": ..., "type": ..., "status": ...}}

``GatewayError`` subclasses are client-side failures: they are never retried
and carry the status that is returned as-is. ``UpstreamError`` describes a
failed upstream call and is the only error the retry policy looks at.
"""

from __future__ import annotations

from typing import Any

# Error type mapping from HTTP status to error type string
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    405: "method_not_allowed",
    413: "request_too_large",
    429: "rate_limit_error",
    500: "api_error",
    502: "api_error",
    503: "api_error",
    504: "api_error",
}


def error_type_for(status: int) -> str:
    """Return the error type string for an HTTP status."""
    if status in ERROR_TYPE_MAP:
        return ERROR_TYPE_MAP[status]
    return "api_error" if status >= 500 else "invalid_request_error"


def error_body(message: str, status: int, error_type: str | None = None) -> dict[str, Any]:
    """Build the JSON error envelope."""
    return {
        "error": {
            "message": message,
            "type": error_type or error_type_for(status),
            "status": status,
        }
    }


class GatewayError(Exception):
    """Base class for errors surfaced directly to the client."""

    status: int = 500

    def __init__(self, message: str, status: int | None = None, error_type: str | None = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        self.error_type = error_type or error_type_for(self.status)

    def to_dict(self) -> dict[str, Any]:
        return error_body(self.message, self.status, self.error_type)


class InvalidRequest(GatewayError):
    status = 400


class Unauthenticated(GatewayError):
    status = 401


class Forbidden(GatewayError):
    status = 403


class NotFound(GatewayError):
    status = 404


class MethodNotAllowed(GatewayError):
    status = 405


class PayloadTooLarge(GatewayError):
    status = 413


class RateLimited(GatewayError):
    """Raised by admission control; ``retry_after`` is in whole seconds."""

    status = 429

    def __init__(self, message: str, retry_after: int = 1):
        super().__init__(message)
        self.retry_after = retry_after


class TransformError(InvalidRequest):
    """A compat request that cannot be expressed in the native dialect."""


class UnsupportedFormat(TransformError):
    pass


class UnknownContentType(TransformError):
    pass


class ImageFetchError(TransformError):
    pass


class UpstreamError(Exception):
    """Raised when the upstream API call fails.

    ``status_code`` is None for transport failures (connection refused,
    timeouts, reset), which are always considered retryable.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def retryable(self) -> bool:
        """Transport failures and 5xx are retried; 4xx (including 429) are not."""
        return self.status_code is None or self.status_code >= 500

    def to_dict(self) -> dict[str, Any]:
        status = self.status_code or 502
        return error_body(str(self), status)
