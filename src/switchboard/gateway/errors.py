"""Shared error definitions for the gateway.

Every failure the gateway reports to a caller is a GatewayError subclass.
Each carries the HTTP status and the Anthropic error type used in the
response body.
"""

from __future__ import annotations

# Error type mapping from upstream status to Anthropic error type
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    413: "request_too_large",
    429: "rate_limit_error",
    500: "api_error",
    502: "api_error",
    503: "api_error",
    504: "api_error",
    529: "overloaded_error",
}


class GatewayError(Exception):
    """Base class for errors reported to the caller."""

    status: int = 500
    error_type: str = "api_error"

    def to_body(self) -> dict[str, object]:
        """Anthropic-format error body."""
        return {
            "type": "error",
            "error": {
                "type": self.error_type,
                "message": str(self),
            },
        }


class InvalidRequestError(GatewayError):
    """Inbound request cannot be served as sent."""

    status = 400
    error_type = "invalid_request_error"


class RequestValidationError(InvalidRequestError):
    """One request field failed validation."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


class UpstreamError(GatewayError):
    """Raised when the upstream API returns a non-success status."""

    def __init__(self, message: str, status_code: int, response_body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def status(self) -> int:  # type: ignore[override]
        return self.status_code

    @property
    def error_type(self) -> str:  # type: ignore[override]
        return ERROR_TYPE_MAP.get(self.status_code, "api_error")


class UpstreamTimeoutError(GatewayError, TimeoutError):
    """Upstream call exceeded its time bound."""

    status = 504
    error_type = "timeout_error"


class InvalidUpstreamResponse(GatewayError):
    """Upstream payload is missing required structure."""

    status = 502
    error_type = "api_error"


class InternalError(GatewayError):
    """Anything unclassified."""

    status = 500
    error_type = "internal_error"

    @classmethod
    def wrap(cls, error: BaseException, *, expose: bool) -> InternalError:
        """Wrap an uncaught error, hiding its message unless ``expose`` is set."""
        message = str(error) or type(error).__name__
        return cls(message if expose else "Internal server error")
