"""
Reportflow Engine - Error Handling

Exception hierarchy for the ingestion engine and the JSON error envelope the
HTTP layer renders from it.

Every error belongs to one of two categories:

    input   the uploader can fix it (bad header, bad date, chunk out of order) -> 4xx
    system  nothing the uploader can do (storage failure)                      -> 5xx

Envelope:
    {"error": "schema_error", "message": "...", "status_code": 400,
     "category": "input", "request_id": "1f2e3d4c5b6a", "details": [...]}
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .middleware import get_request_id

logger = logging.getLogger(__name__)

CATEGORY_INPUT = "input"
CATEGORY_SYSTEM = "system"


class ErrorDetail(BaseModel):
    """One field-level problem (a missing header, an invalid body field)."""

    field: str | None = None
    message: str
    code: str | None = None


class ErrorResponse(BaseModel):
    error: str
    message: str
    status_code: int
    category: str | None = None
    request_id: str | None = None
    details: list[ErrorDetail] | None = None


# =============================================================================
# Exceptions
# =============================================================================


class ReportflowError(Exception):
    """Base class; carries everything the error envelope needs."""

    category = CATEGORY_SYSTEM

    def __init__(
        self,
        message: str,
        error_code: str = "internal_error",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: list[ErrorDetail] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details

    @property
    def is_input_error(self) -> bool:
        return self.category == CATEGORY_INPUT


class IngestError(ReportflowError):
    """Raised by the ingestion engine."""


class SchemaError(IngestError):
    """No row satisfies the header policy, or an EXACT header carries extras."""

    category = CATEGORY_INPUT

    def __init__(self, message: str, details: list[ErrorDetail] | None = None):
        super().__init__(message, "schema_error", status.HTTP_400_BAD_REQUEST, details)


class ValidationError(IngestError):
    """Malformed period, empty input, or chunk sequencing violation."""

    category = CATEGORY_INPUT

    def __init__(self, message: str, details: list[ErrorDetail] | None = None):
        super().__init__(message, "validation_error", status.HTTP_400_BAD_REQUEST, details)


class RowError(IngestError):
    """
    A single row failed normalization.

    The normalizer drops the row and counts ``reason``; it never reaches the
    caller.
    """

    category = CATEGORY_INPUT

    def __init__(self, message: str, reason: str, row_number: int | None = None):
        super().__init__(message, "row_error", 422)
        self.reason = reason
        self.row_number = row_number


class StorageError(IngestError):
    """Transaction start or batch execution failed; nothing was committed."""

    def __init__(self, message: str = "Storage operation failed"):
        super().__init__(message, "storage_error", status.HTTP_503_SERVICE_UNAVAILABLE)


class UnknownReportTypeError(ReportflowError, LookupError):
    """The report-type tag (or tag/version pair) is not registered."""

    category = CATEGORY_INPUT

    def __init__(self, report_type: str, version: int | None = None):
        label = report_type if version is None else f"{report_type} v{version}"
        super().__init__(
            f"Unknown report type: {label}",
            "unknown_report_type",
            status.HTTP_400_BAD_REQUEST,
        )
        self.report_type = report_type
        self.version = version


# =============================================================================
# Exception Handlers
# =============================================================================

# Error codes for HTTPExceptions raised by routers and dependencies
HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    503: "service_unavailable",
}


def error_response(
    status_code: int,
    error: str,
    message: str,
    category: str | None = None,
    details: list[ErrorDetail] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        message=message,
        status_code=status_code,
        category=category,
        request_id=get_request_id() or None,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def handle_reportflow_error(request: Request, exc: ReportflowError) -> JSONResponse:
    level = logging.WARNING if exc.is_input_error else logging.ERROR
    logger.log(
        level,
        "%s on %s: %s",
        type(exc).__name__,
        request.url.path,
        exc.message,
        extra={"path": request.url.path, "error_code": exc.error_code, "status_code": exc.status_code},
    )
    return error_response(exc.status_code, exc.error_code, exc.message, exc.category, exc.details)


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("HTTP %d on %s: %s", exc.status_code, request.url.path, exc.detail)
    message = exc.detail.get("message", str(exc.detail)) if isinstance(exc.detail, dict) else str(exc.detail)
    return error_response(
        exc.status_code,
        HTTP_ERROR_CODES.get(exc.status_code, "internal_error"),
        message,
        CATEGORY_INPUT if exc.status_code < 500 else CATEGORY_SYSTEM,
    )


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies: one detail per offending field."""
    details = [
        ErrorDetail(
            field=".".join(str(part) for part in err.get("loc", ())) or None,
            message=err.get("msg", "invalid value"),
            code=err.get("type"),
        )
        for err in exc.errors()
    ]
    logger.warning("Invalid request body on %s (%d fields)", request.url.path, len(details))
    return error_response(
        422,
        "validation_error",
        "Request validation failed",
        CATEGORY_INPUT,
        details,
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    """Anything else: full traceback in the log, generic message to the client."""
    logger.error(
        "Unhandled %s on %s %s: %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "An unexpected error occurred. Please try again later.",
        CATEGORY_SYSTEM,
    )


def setup_error_handlers(app: FastAPI) -> None:
    """Register the error envelope handlers on ``app``."""
    app.add_exception_handler(ReportflowError, handle_reportflow_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)
