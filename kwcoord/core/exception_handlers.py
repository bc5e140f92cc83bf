"""Global exception handlers for consistent error responses.

This module provides FastAPI exception handlers that intercept all errors
(domain and unexpected) and return consistent JSON responses with proper
HTTP status codes and traceability.

Design:
- AppError subclasses → appropriate HTTP status (400, 409, 500, 503)
- Unexpected Exception → generic 500 (safety net)
- All responses include request_id for distributed tracing
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from kwcoord.core.errors import (
    AppError,
    BusinessRuleError,
    ConfigurationAppError,
    StoreError,
    ValidationAppError,
)
from kwcoord.core.logging import get_request_id

logger = logging.getLogger(__name__)

STORE_RETRY_AFTER_SECONDS = 5


def _status_for(exc: AppError) -> int:
    if isinstance(exc, StoreError):
        return 503
    if isinstance(exc, BusinessRuleError):
        return 409
    if isinstance(exc, ConfigurationAppError):
        return 500
    if isinstance(exc, ValidationAppError):
        return 400
    return 400


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    Routes domain errors to appropriate HTTP status codes:
    - ValidationAppError → 400 Bad Request (client fault)
    - BusinessRuleError → 409 Conflict
    - ConfigurationAppError → 500 Internal Server Error (deployment fault)
    - StoreError → 503 Service Unavailable with Retry-After

    Configuration problems are logged with their message but answered with
    a generic one, so deployment details do not reach clients.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error details.
    """
    status_code = _status_for(exc)

    logger.log(
        logging.ERROR if status_code >= 500 else logging.WARNING,
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
            "request_id": get_request_id(),
        },
    )

    error_content: dict = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    headers: dict[str, str] = {}

    if isinstance(exc, ConfigurationAppError):
        error_content["code"] = "configuration_error"
        error_content["message"] = "The service is misconfigured. Please try again later."
    elif isinstance(exc, StoreError):
        error_content["message"] = "Coordination store unavailable. Please retry."
        headers["Retry-After"] = str(STORE_RETRY_AFTER_SECONDS)
    elif exc.details:
        error_content["details"] = exc.details

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
        headers=headers or None,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning generic message.
    Prevents information leakage (no stack traces to client).
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with FastAPI app.

    Must be called during app initialization, before route registration.

    Args:
        app: FastAPI application instance.
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
