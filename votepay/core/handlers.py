"""
Centralized exception handlers for the FastAPI application.

Design:
    - A single generic handler catches all BaseAppError subclasses.
    - HTTP status codes come from the exception's `http_status_code` attribute.
    - Client responses use `to_safe_dict()`; internal details are logged, not sent.
    - Request-schema failures become 400 `{success: false, message}` bodies.
    - Anything else is logged through the error monitor and returned as a
      sanitized 500, so no handler failure escapes unstructured.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from votepay.core.exceptions import BaseAppError
from votepay.core.monitoring import error_monitor
import logging

logger = logging.getLogger(__name__)


async def app_exception_handler(request: Request, exc: BaseAppError) -> JSONResponse:
    """
    Generic handler for all BaseAppError subclasses.

    - Logs full internal details (to_dict) for debugging.
    - Returns sanitized response (to_safe_dict) to the client.
    """
    if exc.http_status_code >= 500:
        logger.error(
            f"[{exc.__class__.__name__}] {exc.message}",
            extra={"error_details": exc.to_dict()},
        )
    elif exc.http_status_code >= 400:
        logger.warning(
            f"[{exc.__class__.__name__}] {exc.message}",
            extra={"error_details": exc.to_dict()},
        )
    else:
        logger.info(
            f"[{exc.__class__.__name__}] {exc.message}",
            extra={"error_details": exc.to_dict()},
        )

    return JSONResponse(
        status_code=exc.http_status_code,
        content=exc.to_safe_dict(),
    )


def _describe_validation_errors(errors) -> str:
    missing = [
        ".".join(str(part) for part in error["loc"][1:])
        for error in errors
        if error.get("type") == "missing"
    ]
    if missing:
        return "Missing required fields: " + ", ".join(missing)

    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first["loc"][1:])
        return f"Invalid value for {field}: {first['msg']}" if field else first["msg"]

    return "Invalid request"


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Map request-schema failures to the 400 validation contract."""
    errors = exc.errors()
    message = _describe_validation_errors(errors)
    logger.warning(f"[RequestValidationError] {request.url.path}: {message}")

    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "PaymentValidationError",
            "message": message,
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: log with stack trace and answer with a generic 500."""
    error_monitor.log_error(exc, {
        "path": request.url.path,
        "method": request.method,
        "context": "unhandled_exception",
    })

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "InternalServerError",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def setup_exception_handlers(app: FastAPI):
    """
    Register the exception handlers.

    Because BaseAppError is the base class, one registration covers every
    subclass (PaymentValidationError, AccountConfigurationError, ...).
    """
    app.add_exception_handler(BaseAppError, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
