"""
Square error classification.

Every failure coming out of the Square client is mapped onto a closed set of
error types here. Retry eligibility and tenant-facing messages are decided in
this module only; callers never look at raw HTTP status codes.
"""

import logging
from enum import Enum
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class SquareErrorType(str, Enum):
    AUTH = "AUTH"
    RATE_LIMIT = "RATE_LIMIT"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    API = "API"
    UNKNOWN = "UNKNOWN"
    # Raised by the sync engine itself, never by the client
    TOKEN_UNAVAILABLE = "TOKEN_UNAVAILABLE"
    LOCATION_UNSELECTED = "LOCATION_UNSELECTED"


USER_MESSAGES = {
    SquareErrorType.AUTH: "Square rejected the stored credentials. Please reconnect Square.",
    SquareErrorType.RATE_LIMIT: "Square is rate limiting requests. Please try again shortly.",
    SquareErrorType.NOT_FOUND: "The requested Square resource was not found.",
    SquareErrorType.VALIDATION: "Square rejected the request as invalid.",
    SquareErrorType.API: "Square returned an error.",
    SquareErrorType.UNKNOWN: "An unexpected error occurred while talking to Square.",
    SquareErrorType.TOKEN_UNAVAILABLE: "Square is not connected or the connection has expired. Please reconnect Square.",
    SquareErrorType.LOCATION_UNSELECTED: "Select a Square location before syncing.",
}

_STATUS_TYPES = {
    400: SquareErrorType.VALIDATION,
    401: SquareErrorType.AUTH,
    404: SquareErrorType.NOT_FOUND,
    429: SquareErrorType.RATE_LIMIT,
}


class SquareSyncError(Exception):
    """Classified failure from the Square integration."""

    def __init__(
        self,
        error_type: SquareErrorType,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[list[str]] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.status_code = status_code
        self.details = details or []

    @property
    def retryable(self) -> bool:
        return self.error_type == SquareErrorType.RATE_LIMIT

    @property
    def user_message(self) -> str:
        base = USER_MESSAGES[self.error_type]
        if self.error_type == SquareErrorType.VALIDATION and self.details:
            return f"{base} {'; '.join(self.details)}"
        return base

    def __repr__(self):
        return f"<SquareSyncError {self.error_type.value} status={self.status_code}: {self.message}>"


def _extract_errors(body: Any) -> Optional[list[dict]]:
    """Return Square's ``errors`` array, or None if the body does not conform."""
    if not isinstance(body, dict):
        return None
    errors = body.get("errors")
    if isinstance(errors, list) and errors and all(isinstance(e, dict) for e in errors):
        return errors
    # OAuth endpoints answer with {"message": ..., "type": ...}
    if isinstance(body.get("message"), str):
        return [{"code": body.get("type"), "detail": body["message"]}]
    return None


def classify_response(status_code: int, body: Any) -> SquareSyncError:
    """Classify a non-2xx Square response."""
    errors = _extract_errors(body)
    details = [str(e.get("detail") or e.get("code") or "") for e in errors] if errors else []
    details = [d for d in details if d]
    message = "; ".join(details) if details else f"Square responded with HTTP {status_code}"

    error_type = _STATUS_TYPES.get(status_code)
    if error_type is None:
        error_type = SquareErrorType.API if errors else SquareErrorType.UNKNOWN

    return SquareSyncError(error_type, message, status_code=status_code, details=details)


def classify_error(exc: BaseException) -> SquareSyncError:
    """Map any exception raised during a sync onto the closed taxonomy."""
    if isinstance(exc, SquareSyncError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        try:
            body = response.json()
        except ValueError:
            body = None
        return classify_response(response.status_code, body)

    if isinstance(exc, httpx.TimeoutException):
        return SquareSyncError(SquareErrorType.UNKNOWN, f"Request to Square timed out: {exc}")

    if isinstance(exc, httpx.TransportError):
        return SquareSyncError(SquareErrorType.UNKNOWN, f"Could not reach Square: {exc}")

    return SquareSyncError(SquareErrorType.UNKNOWN, f"{type(exc).__name__}: {exc}")
