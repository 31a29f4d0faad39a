from typing import Any, Dict, Optional

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    message: str = Field(..., description="Human-readable error message")
    type: str = Field(..., description="OpenAI-style error category")
    code: Optional[str] = Field(default=None, description="Machine-readable error code")


class ErrorResponse(BaseModel):
    """
    OpenAI-compatible error envelope:
    {"error": {"message": "...", "type": "...", "code": "..."}}
    """

    error: ErrorDetail


class GatewayError(Exception):
    """
    Base class for errors that map onto a client-visible HTTP response.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "server_error"
    code: str = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_response(self) -> JSONResponse:
        return error_response(
            self.status_code, message=self.message, error_type=self.error_type, code=self.code
        )


class InvalidRequest(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"
    code = "invalid_request"


class AuthenticationError(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "authentication_error"
    code = "invalid_api_key"


class ConfigurationError(Exception):
    """
    Raised at startup when the platform configuration is unusable.
    """


class TokenUnavailable(GatewayError):
    """
    Every stage of the token cascade came up empty.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "server_error"
    code = "token_unavailable"


class TokenTimeout(TokenUnavailable):
    code = "token_timeout"


class TokenFetchFailed(TokenUnavailable):
    code = "token_fetch_failed"


class UpstreamError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_error"
    code = "upstream_error"


class UpstreamHTTPError(UpstreamError):
    """
    Upstream answered with a non-2xx status. `body` is truncated so that
    large HTML error pages do not end up in logs or client responses.
    """

    code = "upstream_http_error"
    max_body_chars = 500

    def __init__(self, *, upstream_status: int, body: str) -> None:
        self.upstream_status = upstream_status
        self.body = (body or "")[: self.max_body_chars]
        super().__init__(f"Upstream returned HTTP {upstream_status}: {self.body}")


class UpstreamTimeout(UpstreamError):
    code = "upstream_timeout"


class UpstreamResponseError(UpstreamError):
    """
    Upstream answered 2xx but the payload was unusable or carried an error.
    """

    code = "upstream_response_error"


def error_body(message: str, *, error_type: str, code: Optional[str]) -> Dict[str, Any]:
    payload = ErrorResponse(error=ErrorDetail(message=message, type=error_type, code=code))
    return payload.model_dump()


def error_response(
    status_code: int, *, message: str, error_type: str, code: Optional[str]
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_body(message, error_type=error_type, code=code),
    )


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "ErrorDetail",
    "ErrorResponse",
    "GatewayError",
    "InvalidRequest",
    "TokenFetchFailed",
    "TokenTimeout",
    "TokenUnavailable",
    "UpstreamError",
    "UpstreamHTTPError",
    "UpstreamResponseError",
    "UpstreamTimeout",
    "error_body",
    "error_response",
]
