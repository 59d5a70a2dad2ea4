"""
RFC 7807 Problem Details exception handling.

Provides standardized error responses for the API following the
"Problem Details for HTTP APIs" specification, and maps classified Square
sync errors onto them.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
from datetime import datetime

from app.core.logging import get_request_id, generate_id
from app.core.sentry import capture_exception
from app.services.square_errors import SquareErrorType, SquareSyncError

logger = logging.getLogger(__name__)

PROBLEM_BASE_URL = "https://api.pos-sales-sync.local/problems"


class ErrorCode(str, Enum):
    """Standardized error codes for the API."""

    # Authentication & Authorization
    UNAUTHORIZED = "AUTH_001"
    FORBIDDEN = "AUTH_002"

    # Validation
    VALIDATION_ERROR = "VAL_001"

    # Resource
    NOT_FOUND = "RES_001"
    CONFLICT = "RES_003"

    # External Services
    EXTERNAL_SERVICE_ERROR = "EXT_001"
    SQUARE_AUTH_ERROR = "EXT_010"
    SQUARE_RATE_LIMITED = "EXT_011"
    SQUARE_NOT_CONNECTED = "EXT_012"
    SQUARE_LOCATION_UNSELECTED = "EXT_013"

    # Server
    INTERNAL_ERROR = "SRV_001"
    SERVICE_UNAVAILABLE = "SRV_002"


class ProblemDetail(BaseModel):
    """
    RFC 7807 Problem Details response schema.

    Attributes:
        type: URI reference identifying the problem type
        title: Short, human-readable summary
        status: HTTP status code
        detail: Human-readable explanation specific to this occurrence
        instance: URI reference identifying this specific occurrence
        code: Machine-readable error code for client handling
        timestamp: ISO 8601 timestamp of when the error occurred
        trace_id: Request id for tracing in logs
        errors: List of field-level validation errors (for 422)
    """

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    code: str
    timestamp: str
    trace_id: str
    errors: Optional[List[Dict[str, Any]]] = None


def _trace_id() -> str:
    request_id = get_request_id()
    return request_id if request_id != "unknown" else generate_id()


_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    409: "Conflict",
    422: "Validation Error",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


class APIException(HTTPException):
    """
    Base API exception with RFC 7807 support.

    Usage:
        raise APIException(
            status_code=409,
            code=ErrorCode.SQUARE_NOT_CONNECTED,
            detail="Square is not connected",
        )
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.errors = errors
        self.trace_id = _trace_id()
        self.timestamp = datetime.utcnow().isoformat() + "Z"
        super().__init__(status_code=status_code, detail=detail, headers=headers)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        return ProblemDetail(
            type=f"{PROBLEM_BASE_URL}/{self.code.value.lower().replace('_', '-')}",
            title=_TITLES.get(self.status_code, "Error"),
            status=self.status_code,
            detail=self.detail,
            instance=instance,
            code=self.code.value,
            timestamp=self.timestamp,
            trace_id=self.trace_id,
            errors=self.errors,
        )


# status, code per classified Square error
_SQUARE_ERROR_MAP = {
    SquareErrorType.AUTH: (401, ErrorCode.SQUARE_AUTH_ERROR),
    SquareErrorType.RATE_LIMIT: (429, ErrorCode.SQUARE_RATE_LIMITED),
    SquareErrorType.NOT_FOUND: (404, ErrorCode.NOT_FOUND),
    SquareErrorType.VALIDATION: (400, ErrorCode.VALIDATION_ERROR),
    SquareErrorType.API: (502, ErrorCode.EXTERNAL_SERVICE_ERROR),
    SquareErrorType.UNKNOWN: (502, ErrorCode.EXTERNAL_SERVICE_ERROR),
    SquareErrorType.TOKEN_UNAVAILABLE: (409, ErrorCode.SQUARE_NOT_CONNECTED),
    SquareErrorType.LOCATION_UNSELECTED: (409, ErrorCode.SQUARE_LOCATION_UNSELECTED),
}


def square_error_to_api_exception(error: SquareSyncError) -> APIException:
    status_code, code = _SQUARE_ERROR_MAP[error.error_type]
    errors = [{"message": d} for d in error.details] or None
    return APIException(status_code=status_code, code=code, detail=error.user_message, errors=errors)


def _problem_response(exc: APIException, request: Request) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_problem_detail(instance=str(request.url.path)).model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=exc.headers,
    )


async def handle_api_exception(request: Request, exc: APIException) -> JSONResponse:
    logger.warning(f"APIException: {exc.code.value} - {exc.detail} ({request.url.path})")
    return _problem_response(exc, request)


async def handle_square_error(request: Request, exc: SquareSyncError) -> JSONResponse:
    logger.warning(f"Square error on {request.url.path}: {exc!r}")
    return _problem_response(square_error_to_api_exception(exc), request)


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTPException with RFC 7807 response."""
    code_map = {
        400: ErrorCode.VALIDATION_ERROR,
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        503: ErrorCode.SERVICE_UNAVAILABLE,
    }
    api_exc = APIException(
        status_code=exc.status_code,
        code=code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR),
        detail=str(exc.detail),
        headers=getattr(exc, "headers", None),
    )
    return _problem_response(api_exc, request)


async def handle_validation_exception(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors with field-level details."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    api_exc = APIException(
        status_code=422,
        code=ErrorCode.VALIDATION_ERROR,
        detail="Request validation failed",
        errors=errors,
    )
    return _problem_response(api_exc, request)


async def handle_generic_exception(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with RFC 7807 response."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc!r}", exc_info=exc)
    capture_exception(exc, context={"path": request.url.path, "method": request.method})

    # Don't expose internal details in production
    from app.config import settings
    detail = str(exc) if settings.DEBUG else "An unexpected error occurred"

    api_exc = APIException(status_code=500, code=ErrorCode.INTERNAL_ERROR, detail=detail)
    return _problem_response(api_exc, request)


def register_exception_handlers(app):
    app.add_exception_handler(APIException, handle_api_exception)
    app.add_exception_handler(SquareSyncError, handle_square_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_exception)
    app.add_exception_handler(Exception, handle_generic_exception)
