"""
Unified exception hierarchy for the budget ledger.

This module defines the exception hierarchy with FinanceAppError as the base
exception, allowing for consistent error handling across the storage engine,
the stores built on top of it, and the command line interface.
"""

from typing import Optional


class FinanceAppError(Exception):
    """
    Base exception class for all budget ledger errors.

    All custom exceptions in the application should inherit from this class
    to enable unified error handling and consistent error messages.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary with additional error context
        original_error: Optional original exception that caused this error
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        original_error: Optional[Exception] = None
    ) -> None:
        """
        Initialize FinanceAppError.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error context
            original_error: Optional original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        msg = self.message
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            msg = f"{msg} ({detail_str})"
        return msg


class ConfigError(FinanceAppError):
    """Raised when configuration loading or validation fails."""
    pass


class DatabaseError(FinanceAppError):
    """Raised when database operations fail."""
    pass


class StorageUnavailable(DatabaseError):
    """
    Raised when the underlying store cannot be reached.

    Covers an unreachable or locked database file, a schema written by a newer
    version of the application, a closed engine and operations that exceed the
    configured storage timeout.
    """
    pass


class NotFound(FinanceAppError):
    """Raised when an update or delete references a record that does not exist."""
    pass


class DuplicateName(FinanceAppError):
    """Raised when a category name collides with an existing category."""
    pass


class ValidationError(FinanceAppError):
    """Raised when user input is missing required fields or is malformed."""
    pass
