"""Unified JSON envelope for identity endpoints.

Every response carries success, data or error, and request metadata.
"""

from typing import Any
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field
from starlette.responses import JSONResponse

from utils.timezone import now_utc


class APIError(BaseModel):
    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Safe to show to the user")


class APIMeta(BaseModel):
    timestamp: datetime = Field(..., description="Response timestamp (UTC)")
    request_id: str = Field(..., description="Per-response identifier for support tickets")


class APIResponse(BaseModel):
    """Envelope returned by every identity endpoint, success or failure."""

    success: bool
    data: Any | None = None
    error: APIError | None = None
    meta: APIMeta


def _meta() -> APIMeta:
    return APIMeta(timestamp=now_utc(), request_id=str(uuid4()))


def success_response(data: Any) -> APIResponse:
    return APIResponse(success=True, data=data, meta=_meta())


def error_response(code: str, message: str) -> APIResponse:
    return APIResponse(success=False, error=APIError(code=code, message=message), meta=_meta())


def error_json(
    status_code: int, code: str, message: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    """Error envelope wrapped in a JSONResponse with the given status."""
    return JSONResponse(
        status_code=status_code,
        content=error_response(code, message).model_dump(mode="json"),
        headers=headers,
    )


class ErrorCodes:
    """Standard error codes returned in the error envelope."""

    # Authentication & Authorization
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_REVOKED = "SESSION_REVOKED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    INVALID_TOKEN = "INVALID_TOKEN"
    RATE_LIMITED = "RATE_LIMITED"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"

    # Resource Errors
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"

    # Validation Errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Infrastructure
    INTERNAL_ERROR = "INTERNAL_ERROR"
    EMAIL_DELIVERY_FAILED = "EMAIL_DELIVERY_FAILED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
