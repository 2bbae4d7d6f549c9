"""
FastAPI Middleware for the Screening Core API

Provides CORS configuration, request logging, and error handling that maps
the core's error taxonomy onto HTTP status codes.
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from audit_logger import sanitize_for_logging
from config_manager import ConfigurationError
from screening_models import (
    ArgumentOutOfRangeError, InvalidPartyError, ScreeningError, ScreeningFailedError
)

logger = logging.getLogger(__name__)

# Default allowed origins for local development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware for the application.

    Origins can be customized via CORS_ORIGINS environment variable
    (comma-separated list of allowed origins).
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    else:
        allowed_origins = DEFAULT_CORS_ORIGINS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests with sanitized inputs."""

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", str(time.time_ns()))

        request.state.request_id = request_id
        request.state.start_time = start_time

        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitize_for_logging(str(request.url.path)),
            sanitize_for_logging(request_id),
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                sanitize_for_logging(request_id),
            )
            raise

        processing_time_ms = int((time.time() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

        logger.info(
            "Response: status=%d processing_time_ms=%d request_id=%s",
            response.status_code,
            processing_time_ms,
            sanitize_for_logging(request_id),
        )
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
    errors: Optional[List[str]] = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        errors: Every validation error (optional)

    Returns:
        JSONResponse with standardized error format
    """
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if field:
        error_detail["field"] = field
    if errors:
        error_detail["errors"] = errors

    return JSONResponse(status_code=status_code, content={"error": error_detail})


async def screening_exception_handler(request: Request, exc: ScreeningError) -> JSONResponse:
    """Map core errors to HTTP responses.

    InvalidPartyError -> 422, ArgumentOutOfRangeError -> 400,
    ScreeningFailedError -> 500 with a sanitized message.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    if isinstance(exc, InvalidPartyError):
        logger.warning("Invalid party: %s request_id=%s", sanitize_for_logging(str(exc)), request_id)
        return create_error_response(
            code=exc.code,
            message="Party validation failed",
            status_code=422,
            field=exc.fields[0] if exc.fields else None,
            errors=exc.errors,
        )

    if isinstance(exc, ArgumentOutOfRangeError):
        logger.warning("Argument out of range: %s request_id=%s", sanitize_for_logging(str(exc)), request_id)
        return create_error_response(
            code=exc.code,
            message=str(exc),
            status_code=400,
            field=exc.argument,
        )

    logger.error(
        "Screening error: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
    )
    if isinstance(exc, ScreeningFailedError):
        return create_error_response(
            code=exc.code,
            message=f"Screening failed for {sanitize_for_logging(str(exc.subject_id))}",
            status_code=500,
        )
    return create_error_response(code=exc.code, message="Screening error", status_code=500)


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Bad enum values (list names, frequencies, levels) and similar input errors."""
    logger.warning("Invalid argument: %s", sanitize_for_logging(str(exc)))
    return create_error_response(code="INVALID_ARGUMENT", message=str(exc), status_code=400)


async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("Configuration error: %s", sanitize_for_logging(str(exc)))
    return create_error_response(
        code="CONFIGURATION_ERROR",
        message="Service configuration is invalid. Please contact administrator.",
        status_code=503,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; never leaks internal messages."""
    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        getattr(request.state, "request_id", "unknown"),
    )
    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(ScreeningError, screening_exception_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(ConfigurationError, configuration_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
