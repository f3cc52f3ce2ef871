import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from jobcore.config.logging import bind_request_context, clear_request_context, get_logger

logger = get_logger(__name__)


class JobCoreException(Exception):
    """Base exception for the job orchestration service."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(JobCoreException):
    """Raised when input validation fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class NotFoundError(JobCoreException):
    """Raised when a resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class ConflictError(JobCoreException):
    """Raised when a state transition is not allowed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class UnknownJobTypeError(ValidationError):
    """Raised when a producer names a job type outside the catalog."""

    def __init__(self, job_type: str):
        super().__init__(
            f"Unknown job type: {job_type}", details={"job_type": job_type}
        )


# Registry / startup configuration errors


class DuplicateHandlerError(RuntimeError):
    """Two handlers declared the same job type."""


class HandlerNotRegisteredError(LookupError):
    """A job was leased whose type has no registered handler."""


# Errors raised from (or around) handler execution


class JobError(Exception):
    """Base class for errors a handler raises deliberately."""


class RetryableJobError(JobError):
    """Transient failure: consume an attempt and back off."""


class NonRetryableJobError(JobError):
    """Validation or precondition failure: fail the job without further attempts."""


class HandlerTimeoutError(RetryableJobError):
    """Handler exceeded its queue family's per-invocation timeout."""

    def __init__(self, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(f"Handler timed out after {timeout_s:g}s")


def is_retryable(exc: BaseException) -> bool:
    """Everything except explicit non-retryable signals consumes an attempt."""
    return not isinstance(exc, (NonRetryableJobError, HandlerNotRegisteredError))


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _error_json(
    request: Request,
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(
            status_code=status_code,
            message=message,
            details=details,
            request_id=request_id,
        ),
        headers={"X-Request-ID": request_id} if request_id else None,
    )


async def jobcore_exception_handler(
    request: Request, exc: JobCoreException
) -> JSONResponse:
    """Render service exceptions; client errors log at warning level."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request rejected",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )
    return _error_json(request, exc.status_code, exc.message, exc.details)


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Pydantic body/query validation failures in the common envelope."""
    errors = jsonable_encoder(exc.errors())
    logger.warning("Invalid request", path=request.url.path, errors=len(errors))
    return _error_json(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Request validation failed",
        {"errors": errors},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail)
    return _error_json(request, exc.status_code, str(exc.detail))


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
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
    """Binds the X-Request-ID to request logs and echoes it back."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        bind_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        finally:
            clear_request_context()

        response.headers["X-Request-ID"] = request_id
        return response
