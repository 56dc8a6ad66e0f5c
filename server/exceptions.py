"""
Error Envelope
==============

Every non-2xx response from the auto mode API carries the same body:

    {"error_code": "CONFLICT", "message": "Feature f1 is already running",
     "details": {"feature_id": "f1"}}

Engine exceptions from autoforge.errors propagate out of the routers and are
mapped here:

    AlreadyRunningError          -> 409 CONFLICT
    FeatureNotFoundError         -> 404 NOT_FOUND
    ExecutionNotRegisteredError  -> 404 NOT_FOUND
    InvalidStatusError           -> 422 VALIDATION_ERROR
    anything else                -> 500 INTERNAL_ERROR

Router-level problems (missing project directory) raise BadRequestError.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from autoforge.errors import (
    AlreadyRunningError,
    AutoModeError,
    ExecutionNotRegisteredError,
    FeatureNotFoundError,
    InvalidStatusError,
)

_logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Body of every error response (documented in OpenAPI)."""

    error_code: str = Field(..., examples=["CONFLICT"])
    message: str = Field(..., examples=["Feature feature-1 is already running"])
    details: dict[str, Any] | None = None


class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    BAD_REQUEST = "BAD_REQUEST"
    FORBIDDEN = "FORBIDDEN"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Checked in order; subclasses first
ENGINE_ERROR_STATUS: list[tuple[type[AutoModeError], int, str]] = [
    (AlreadyRunningError, status.HTTP_409_CONFLICT, ErrorCode.CONFLICT),
    (FeatureNotFoundError, status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND),
    (ExecutionNotRegisteredError, status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND),
    (InvalidStatusError, status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorCode.VALIDATION_ERROR),
]

HTTP_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: ErrorCode.BAD_REQUEST,
    status.HTTP_403_FORBIDDEN: ErrorCode.FORBIDDEN,
    status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    status.HTTP_409_CONFLICT: ErrorCode.CONFLICT,
    status.HTTP_422_UNPROCESSABLE_ENTITY: ErrorCode.VALIDATION_ERROR,
}


class BadRequestError(Exception):
    """Raised by routers for requests that cannot be served as given."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


def create_error_response(
    error_code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"error_code": error_code, "message": message}
    if details is not None:
        body["details"] = details
    return body


def _error_json(
    status_code: int,
    error_code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(error_code, message, details),
    )


def classify_engine_error(exc: AutoModeError) -> tuple[int, str, dict[str, Any] | None]:
    """
    Map an engine exception to (HTTP status, error code, details).

    details carries the feature id when the exception has one, plus the
    rejected value for an invalid status.
    """
    details: dict[str, Any] = {}
    feature_id = getattr(exc, "feature_id", None)
    if feature_id is not None:
        details["feature_id"] = feature_id
    if isinstance(exc, InvalidStatusError):
        details["status"] = exc.status

    for error_type, status_code, error_code in ENGINE_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, error_code, details or None

    details["type"] = type(exc).__name__
    return status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.INTERNAL_ERROR, details


# =============================================================================
# Handlers
# =============================================================================

async def auto_mode_error_handler(request: Request, exc: AutoModeError) -> JSONResponse:
    status_code, error_code, details = classify_engine_error(exc)
    if status_code >= 500:
        _logger.error("Auto mode error on %s: %s", request.url.path, exc)
    return _error_json(status_code, error_code, str(exc), details)


async def bad_request_handler(request: Request, exc: BadRequestError) -> JSONResponse:
    return _error_json(status.HTTP_400_BAD_REQUEST, ErrorCode.BAD_REQUEST, exc.message, exc.details)


async def validation_error_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Flatten pydantic errors into one entry per field (body prefix dropped)."""
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body") or "unknown",
            "message": error.get("msg", "Validation error"),
            "type": error.get("type", "value_error"),
        }
        for error in exc.errors()
    ]

    if len(errors) == 1:
        message = f"Invalid {errors[0]['field']}: {errors[0]['message']}"
    else:
        message = f"{len(errors)} invalid fields"

    return _error_json(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorCode.VALIDATION_ERROR,
        message,
        {"errors": errors},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    error_code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    return _error_json(exc.status_code, error_code, str(exc.detail or "An error occurred"))


def register_exception_handlers(app) -> None:
    app.add_exception_handler(AutoModeError, auto_mode_error_handler)
    app.add_exception_handler(BadRequestError, bad_request_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
