"""
Application error types.

Each error carries the HTTP status it maps to; the handlers in main.py turn
them into the `{success: false, error}` envelope.
"""
from typing import Optional


class AppError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    """Missing or malformed input."""

    status_code = 400


class ConflictError(AppError):
    """A uniqueness or car-assignment rule would be broken by the write."""

    status_code = 409

    def __init__(self, field: str, value, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.field = field
        self.value = value


class NotFoundError(AppError):
    status_code = 404


class UpstreamError(AppError):
    """The image store failed or could not be reached."""

    status_code = 500
