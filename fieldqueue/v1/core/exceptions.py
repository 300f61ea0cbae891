"""
Error types of the job service and the JSON envelope of the HTTP surface.

Every response body is either ``{ok: true, data, ...}`` or
``{ok: false, error: {message, code, details}, ...}``.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from fieldqueue.config.logging import add_request_context, get_logger

logger = get_logger(__name__)


class FieldQueueException(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidJobPayloadError(FieldQueueException):
    """Payload rejected at enqueue time (missing org id). Never retried."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class UnauthorizedError(FieldQueueException):
    status_code = status.HTTP_401_UNAUTHORIZED


class ServiceUnavailableError(FieldQueueException):
    """A collaborator the request needs is not configured."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class DispatchError(FieldQueueException):
    """Push delivery to the dispatcher failed."""

    status_code = status.HTTP_502_BAD_GATEWAY


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": _timestamp(),
    }


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    return {
        "ok": False,
        "error": {"message": message, "code": status_code, "details": details or {}},
        "request_id": request_id,
        "timestamp": _timestamp(),
    }


def _error_json(
    request: Request,
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(status_code, message, details, request_id),
    )


async def field_queue_exception_handler(
    request: Request, exc: FieldQueueException
) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request failed",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )
    return _error_json(request, exc.status_code, exc.message, exc.details)


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Routing errors (404, 405) and explicit HTTPExceptions."""
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail)
    return _error_json(request, exc.status_code, str(exc.detail))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        exc_info=True,
    )
    return _error_json(
        request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a request id to the log context and echoes it as X-Request-ID."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        add_request_context(
            request_id=request_id, method=request.method, path=request.url.path
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def install_error_handling(app: FastAPI) -> None:
    """Attach the request context middleware and the envelope error handlers."""
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(FieldQueueException, field_queue_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
