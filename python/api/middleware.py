"""
FastAPI Middleware for the Identity Screening API

Provides CORS configuration, request logging, and error handling that
maps the engine's exceptions onto the standard error body.
"""

import os
import re
import time
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from database.repositories import ReportNotFoundError
from orchestrator import ScreeningFailed
from report_assembler import PersistenceFailure
from screening_models import InvalidRequest
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8080",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8080",
    "http://127.0.0.1:8000",
]

EXPOSED_HEADERS = ["X-Request-ID", "X-Processing-Time-MS"]


def _build_cors_regex_pattern(allowed_origins: List[str]) -> tuple:
    """Build regex pattern for CORS from allowed origins list.

    Args:
        allowed_origins: List of allowed origins (may include wildcards like https://*.example.com)

    Returns:
        Tuple of (combined_regex_pattern or None, exact_origins list)
    """
    regex_patterns = []
    exact_origins = []

    for origin in allowed_origins:
        if "*." in origin:
            scheme, _, host = origin.partition("://*.")
            regex_patterns.append(rf"{re.escape(scheme)}://[\w-]+\.{re.escape(host)}")
        else:
            exact_origins.append(origin)

    if not regex_patterns:
        return None, exact_origins

    combined_regex = "|".join(f"({p})" for p in regex_patterns)
    if exact_origins:
        exact_escaped = "|".join(re.escape(o) for o in exact_origins)
        combined_regex = f"({combined_regex})|({exact_escaped})"

    return combined_regex, exact_origins


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware for the application.

    Origins can be customized via the CORS_ORIGINS environment variable
    (comma-separated). Subdomain wildcards such as https://*.example.com
    are turned into an origin regex.
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    else:
        allowed_origins = DEFAULT_CORS_ORIGINS

    combined_regex, exact_origins = _build_cors_regex_pattern(allowed_origins)
    options = dict(
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )
    if combined_regex:
        app.add_middleware(CORSMiddleware, allow_origin_regex=combined_regex, **options)
    else:
        app.add_middleware(CORSMiddleware, allow_origins=exact_origins, **options)


def client_ip(request: Request) -> Optional[str]:
    """Caller IP: first X-Forwarded-For hop, then CF-Connecting-IP, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    cf_ip = request.headers.get("CF-Connecting-IP", "").strip()
    if cf_ip:
        return cf_ip
    return request.client.host if request.client else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests with sanitized inputs."""

    async def dispatch(self, request: Request, call_next: Callable):
        """Process request and log details."""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or str(time.time_ns())

        request.state.request_id = request_id
        request.state.start_time = start_time

        logger.debug("Headers: %s", {k: sanitize_for_logging(v) for k, v in request.headers.items()})

        # Sanitize path to prevent log injection
        sanitized_path = sanitize_for_logging(str(request.url.path))
        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitized_path,
            sanitize_for_logging(request_id),
        )

        try:
            response = await call_next(request)

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

        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                sanitize_for_logging(request_id),
            )
            raise


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    suggestion: str = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)

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
    if suggestion:
        error_detail["suggestion"] = suggestion

    return JSONResponse(status_code=status_code, content={"error": error_detail})


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map engine exceptions onto HTTP responses.

    Args:
        request: FastAPI request object
        exc: Exception that was raised

    Returns:
        Standardized error response
    """
    request_id = getattr(request.state, "request_id", "unknown")

    if isinstance(exc, InvalidRequest):
        logger.info("Invalid request: field=%s code=%s request_id=%s",
                    exc.field, exc.code, sanitize_for_logging(request_id))
        return create_error_response(
            code=exc.code,
            message=str(exc),
            status_code=422,
            field=exc.field,
            suggestion=exc.suggestion,
        )

    if isinstance(exc, ReportNotFoundError):
        return create_error_response(
            code="REPORT_NOT_FOUND",
            message="No report matches this token",
            status_code=404,
        )

    if isinstance(exc, ScreeningFailed):
        logger.warning("Screening failed: reason=%s request_id=%s", exc.reason,
                       sanitize_for_logging(request_id))
        return create_error_response(
            code="SCREENING_FAILED",
            message=str(exc),
            status_code=503,
            suggestion="Retry later; no source could be consulted",
        )

    if isinstance(exc, PersistenceFailure):
        logger.error("Persistence failure: %s request_id=%s", sanitize_for_logging(str(exc)),
                     sanitize_for_logging(request_id))
        return create_error_response(
            code="PERSISTENCE_FAILURE",
            message="The report could not be stored. No report was created.",
            status_code=500,
        )

    if isinstance(exc, ConfigurationError):
        logger.error("Configuration error: %s", sanitize_for_logging(str(exc)))
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    return await global_exception_handler(request, exc)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Sanitizes error messages to prevent information leakage.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        sanitize_for_logging(request_id),
    )

    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        sanitize_for_logging(request_id),
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema-level validation errors use the same body as InvalidRequest."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part != "body"]
    return create_error_response(
        code="VALIDATION_ERROR",
        message=first.get("msg", "Invalid request"),
        status_code=422,
        field=".".join(location) or None,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    for exc_class in (InvalidRequest, ReportNotFoundError, ScreeningFailed,
                      PersistenceFailure, ConfigurationError):
        app.add_exception_handler(exc_class, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
