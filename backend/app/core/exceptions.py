"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class InvalidTripParametersError(AppException):
    """Raised when trip input fails validation. Never retried."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_TRIP_INVALID",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class TripAlreadyTerminalError(AppException):
    """Raised when an operation targets a trip that can no longer change."""

    def __init__(self, trip_id: str, trip_status: str):
        super().__init__(
            message=f"Trip {trip_id} is already {trip_status}",
            error_code="ERR_TRIP_TERMINAL",
            status_code=status.HTTP_409_CONFLICT,
            details={"trip_id": trip_id, "status": trip_status}
        )


class UnauthorizedTripAccessError(AppException):
    """Raised when the caller does not own the referenced trip."""

    def __init__(self, trip_id: str):
        super().__init__(
            message="This trip does not belong to you",
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"trip_id": trip_id}
        )


class ConcurrentModificationError(AppException):
    """Raised when a compare-and-swap keeps losing to concurrent writers."""

    def __init__(self, trip_id: str = None):
        super().__init__(
            message="Trip was modified concurrently, please retry",
            error_code="ERR_TRIP_CONFLICT",
            status_code=status.HTTP_409_CONFLICT,
            details={"trip_id": trip_id}
        )


class NotificationDeliveryFailed(Exception):
    """Raised by dispatchers when a provider rejects or times out a message."""


# Global Exception Handlers

HTTP_ERROR_CODES = {
    400: "ERR_BAD_REQUEST",
    401: "ERR_UNAUTHORIZED",
    403: "ERR_FORBIDDEN",
    404: "ERR_NOT_FOUND",
    409: "ERR_CONFLICT",
    500: "ERR_INTERNAL_SERVER",
}


def error_response(
    status_code: int,
    error_code: str,
    message: Any,
    details: Dict[str, Any] = None,
    headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    """The one error envelope every endpoint returns."""
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error_code,
            "message": message,
            "details": details or {},
        },
        headers=headers,
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.info("%s %s rejected: %s %s", request.method, request.url.path, exc.error_code, exc.message)
    return error_response(exc.status_code, exc.error_code, exc.message, exc.details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_code = HTTP_ERROR_CODES.get(exc.status_code, "ERR_UNKNOWN")
    return error_response(exc.status_code, error_code, exc.detail, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request bodies that do not match the schema."""
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "ERR_VALIDATION",
        "Validation error",
        {"errors": jsonable_encoder(exc.errors())},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "ERR_INTERNAL_SERVER",
        "An internal server error occurred",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
