"""
Error types shared across the analysis pipeline.

Every error carries an HTTP-style status code and a stable machine-readable
code so API clients can branch on failures without parsing messages.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: str = "INTERNAL_ERROR",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a response payload."""
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class NotFoundError(AppError):
    """Entity is missing or not owned by the caller's organization."""

    def __init__(self, message: str, code: str = "NOT_FOUND", details: Optional[dict[str, Any]] = None):
        super().__init__(message, 404, code, details)


class ConflictError(AppError):
    """Entity is not in a state that allows the requested operation."""

    def __init__(self, message: str, code: str = "CONFLICT", details: Optional[dict[str, Any]] = None):
        super().__init__(message, 409, code, details)


class ValidationError(AppError):
    """Request input is invalid."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", details: Optional[dict[str, Any]] = None):
        super().__init__(message, 400, code, details)


class ScanCancelledError(AppError):
    """A file walk stopped because its run was cancelled or timed out."""

    def __init__(self, message: str = "Scan cancelled"):
        super().__init__(message, 409, "SCAN_CANCELLED")


@contextmanager
def wrap_errors(message: str, code: str, logger: logging.Logger) -> Iterator[None]:
    """
    Re-raise application errors unchanged and wrap anything else.

    Args:
        message: Client-facing message for unexpected failures
        code: Stable error code for unexpected failures
        logger: Logger that records the underlying exception
    """
    try:
        yield
    except AppError:
        raise
    except Exception as e:
        logger.exception("%s: %s", message, e)
        raise AppError(message, 500, code) from e
