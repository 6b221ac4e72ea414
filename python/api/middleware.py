"""
FastAPI middleware for the Batch Screening API

CORS, per-request logging with a request id, and the handlers that turn
exceptions into the standard error envelope:

    {"error": {"code", "message", "timestamp", "field"?, "suggestion"?, "errors"?}}
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from batch.errors import BatchValidationError
from config_manager import ConfigurationError
from log_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Local front-end dev servers
DEFAULT_CORS_ORIGINS = [
    f"http://{host}:{port}"
    for host in ("localhost", "127.0.0.1")
    for port in (3000, 5173, 8000)
]

REQUEST_ID_HEADER = "X-Request-ID"
TIMING_HEADER = "X-Processing-Time-MS"


def setup_cors(app: FastAPI) -> None:
    """Allow the upload UI to call the API.

    CORS_ORIGINS (comma-separated) replaces the local defaults.
    """
    configured = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured or DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER, TIMING_HEADER],
    )


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs method, path, status and timing."""

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(time.time_ns())
        request.state.request_id = request_id

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        logger.info(
            "%s %s request_id=%s",
            request.method,
            sanitize_for_logging(request.url.path),
            sanitize_for_logging(request_id),
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "Request %s failed after %dms: %s",
                request_id, elapsed_ms(), sanitize_for_logging(str(exc)),
            )
            raise

        duration = elapsed_ms()
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[TIMING_HEADER] = str(duration)
        logger.info("Request %s -> %d in %dms", request_id, response.status_code, duration)
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
    suggestion: Optional[str] = None,
    errors: Optional[List[Dict[str, Any]]] = None,
) -> JSONResponse:
    """Build the standard error envelope.

    Args:
        code: Machine-readable error code
        message: Human-readable message
        status_code: HTTP status code
        field: Offending request field, if any
        suggestion: How to fix the request, if known
        errors: Per-row CSV problems, if any
    """
    detail: Dict[str, Any] = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    optional = {"field": field, "suggestion": suggestion, "errors": errors}
    detail.update({key: value for key, value in optional.items() if value})
    return JSONResponse(status_code=status_code, content={"error": detail})


async def batch_validation_handler(request: Request, exc: BatchValidationError) -> JSONResponse:
    """Uploads rejected before a job was created."""
    logger.info(
        "Batch rejected: code=%s rows_with_errors=%d request_id=%s",
        exc.code, len(exc.errors), _request_id(request),
    )
    return create_error_response(
        code=exc.code,
        message=str(exc),
        status_code=400,
        suggestion=exc.suggestion or None,
        errors=exc.errors,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(
        "HTTP %d: %s request_id=%s",
        exc.status_code, sanitize_for_logging(message), _request_id(request),
    )
    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=message,
        status_code=exc.status_code,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unhandled. The client never sees the exception text."""
    logger.error(
        "Unhandled %s: %s request_id=%s",
        type(exc).__name__, sanitize_for_logging(str(exc)), _request_id(request),
    )
    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Batch service is misconfigured. Please contact the administrator.",
            status_code=503,
        )
    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BatchValidationError, batch_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
