"""
Shared error handling for the delivery platform services.

Every error a service emits is rendered as an ``ErrorEnvelope``::

    {"status": "error", "error": "<message>", "details": ..., "stack": ..., "originalError": ...}

``details`` only appears when the error carries some. ``stack`` and
``originalError`` only appear when the service runs in a diagnostic mode.
"""

import math
import traceback
from typing import Any, Dict, Literal, Mapping, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

GENERIC_ERROR_MESSAGE = "Something went wrong, please try again later"


class ErrorEnvelope(BaseModel):
    """Standard error response format."""

    model_config = ConfigDict(populate_by_name=True)

    status: Literal["error"] = "error"
    error: str
    details: Optional[Any] = None
    stack: Optional[str] = None
    original_error: Optional[Dict[str, Any]] = Field(default=None, alias="originalError")

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def format_stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


class PlatformException(Exception):
    """Base exception for the platform services."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[Any] = None,
        original_error: Optional[BaseException] = None,
        headers: Optional[Mapping[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.original_error = original_error
        self.headers: Dict[str, str] = dict(headers or {})
        super().__init__(message)

    def to_envelope(self, include_diagnostics: bool = False) -> ErrorEnvelope:
        """Convert to error envelope."""
        envelope = ErrorEnvelope(error=self.message, details=self.details)
        if include_diagnostics:
            envelope.stack = format_stack(self)
            if self.original_error is not None:
                envelope.original_error = {
                    "message": str(self.original_error),
                    "stack": format_stack(self.original_error),
                }
        return envelope


class ValidationError(PlatformException):
    """Bad request shape."""

    def __init__(self, message: str = "Invalid request", details: Optional[Any] = None):
        super().__init__("VALIDATION_ERROR", message, 400, details)


class AuthError(PlatformException):
    """Authentication-related errors."""

    def __init__(self, message: str = "Unauthorized access", details: Optional[Any] = None):
        super().__init__("AUTH_ERROR", message, 401, details)


class ForbiddenError(PlatformException):
    """Authorization-related errors."""

    def __init__(self, message: str = "Forbidden access", details: Optional[Any] = None):
        super().__init__("FORBIDDEN_ERROR", message, 403, details)


class NotFoundError(PlatformException):

    def __init__(self, message: str = "Resource not found", details: Optional[Any] = None):
        super().__init__("NOT_FOUND_ERROR", message, 404, details)


class MethodNotAllowedError(PlatformException):

    def __init__(self, allowed: str, message: str = "Method not allowed"):
        super().__init__("METHOD_NOT_ALLOWED", message, 405, headers={"Allow": allowed})


class PayloadTooLargeError(PlatformException):
    """Request body over the configured cap."""

    def __init__(self, limit_bytes: int, message: str = "Request body too large"):
        super().__init__(
            "PAYLOAD_TOO_LARGE",
            message,
            413,
            details={"limit_bytes": limit_bytes},
            headers={"Connection": "close"},
        )


class RateLimitError(PlatformException):
    """Rate limiting errors."""

    def __init__(
        self,
        limit: int,
        retry_after: float,
        message: str = "Too many requests from this IP, please try again later.",
    ):
        retry_after_seconds = max(0, math.ceil(retry_after))
        super().__init__(
            "RATE_LIMIT_ERROR",
            message,
            429,
            details={"limit": limit, "retry_after": retry_after_seconds},
            headers={
                "Retry-After": str(retry_after_seconds),
                "RateLimit-Limit": str(limit),
                "RateLimit-Remaining": "0",
                "RateLimit-Reset": str(retry_after_seconds),
            },
        )
        self.retry_after = retry_after_seconds


class ServiceUnavailableError(PlatformException):
    """Upstream service could not be reached."""

    def __init__(
        self,
        upstream: str,
        message: str = "Upstream service unavailable",
        status_code: int = 503,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            "SERVICE_UNAVAILABLE",
            message,
            status_code,
            details={"upstream": upstream},
            original_error=original_error,
        )


class ServerError(PlatformException):

    def __init__(
        self,
        message: str = "Server error",
        details: Optional[Any] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__("SERVER_ERROR", message, 500, details, original_error)


def error_response(
    exc: BaseException,
    request: Optional[Request] = None,
    *,
    include_diagnostics: bool = False,
    logger: Any = None,
) -> JSONResponse:
    """Render any exception as an error envelope response.

    Typed platform errors keep their status, message and details. Anything
    else becomes a 500 with a generic message; the real message only reaches
    the log.
    """
    if isinstance(exc, PlatformException):
        envelope = exc.to_envelope(include_diagnostics)
        status_code = exc.status_code
        headers = exc.headers
        code = exc.code
    else:
        envelope = ErrorEnvelope(error=GENERIC_ERROR_MESSAGE)
        if include_diagnostics:
            envelope.stack = format_stack(exc)
        status_code = 500
        headers = {}
        code = "INTERNAL_ERROR"

    if logger is not None:
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "Request failed",
            method=request.method if request is not None else None,
            path=request.url.path if request is not None else None,
            status_code=status_code,
            code=code,
            message=str(exc),
            exc_info=exc,
        )

    return JSONResponse(status_code=status_code, content=envelope.to_body(), headers=headers)
