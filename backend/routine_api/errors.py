# ---------------------------------------------------------------------------
# errors.py
#
# Typed application errors.
#
# Every failure the API knows how to describe is an `AppError` carrying the
# HTTP status, a machine-readable code and a client-safe message. The error
# handlers in middleware.py turn these into the error envelope; anything that
# is not an `AppError` is answered with the generic 500 shape.
#
# Database errors keep their diagnostic context (routine name, parameters) on
# the exception object for server-side logs only. It never reaches `message`.
# ---------------------------------------------------------------------------

from __future__ import annotations

from typing import Any, Mapping, Optional

DEFAULT_ERROR_CODE = "INTERNAL_SERVER_ERROR"
DEFAULT_ERROR_MESSAGE = "An unexpected error occurred"


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500
    code: str = DEFAULT_ERROR_CODE
    message: str = DEFAULT_ERROR_MESSAGE

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "statusCode": self.status_code,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InputValidationError(AppError):
    """Request input failed schema rules. `details` lists field violations."""

    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Validation failed"


class AuthorizationError(AppError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Not allowed"


class DatabaseConnectionError(AppError):
    """The connection pool could not be established. Safe to retry later."""

    code = "DATABASE_CONNECTION_ERROR"
    message = "Database unavailable"


class DatabaseError(AppError):
    """A routine call failed at the driver or the server."""

    code = "DATABASE_ERROR"
    message = "Database operation failed"

    def __init__(
        self,
        routine: str,
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        code: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(code=code)
        self.routine = routine
        self.parameters = dict(parameters or {})
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.message} ({self.routine})"


class TransactionError(AppError):
    """Begin/commit/rollback failed at the driver."""

    code = "TRANSACTION_ERROR"
    message = "Transaction failed"


class InvalidStateError(AppError):
    """A transaction was used after it was committed or rolled back."""

    code = "INVALID_TRANSACTION_STATE"
    message = "Transaction is no longer active"

