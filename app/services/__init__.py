# Services module
from app.services.square_errors import SquareErrorType, SquareSyncError, classify_error

__all__ = [
    "SquareErrorType",
    "SquareSyncError",
    "classify_error",
]
