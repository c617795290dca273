"""
Unit tests for the unified exception hierarchy.

Tests exception creation, attributes, string representations, and error context.
"""

import pytest
from exceptions import (
    FinanceAppError,
    ConfigError,
    DatabaseError,
    StorageUnavailable,
    NotFound,
    DuplicateName,
    ValidationError,
)


class TestFinanceAppError:
    """Test base FinanceAppError class."""

    def test_basic_exception_creation(self):
        """Test creating a basic FinanceAppError."""
        error = FinanceAppError("Test error message")
        assert str(error) == "Test error message"
        assert error.message == "Test error message"
        assert error.details == {}
        assert error.original_error is None

    def test_exception_with_details(self):
        """Test creating exception with details dictionary."""
        details = {"key1": "value1", "key2": 123}
        error = FinanceAppError("Test error", details=details)
        assert error.details == details
        assert str(error) == "Test error (key1=value1, key2=123)"

    def test_exception_with_original_error(self):
        """Test creating exception with original error chaining."""
        original = ValueError("Original error")
        error = FinanceAppError("Wrapped error", original_error=original)
        assert error.original_error is original


class TestExceptionHierarchy:
    """Test specific exception subclasses."""

    @pytest.mark.parametrize(
        "exc_class",
        [ConfigError, DatabaseError, StorageUnavailable, NotFound, DuplicateName, ValidationError],
    )
    def test_all_derive_from_base(self, exc_class):
        error = exc_class("boom")
        assert isinstance(error, FinanceAppError)
        assert error.message == "boom"

    def test_storage_unavailable_is_database_error(self):
        """Callers catching DatabaseError also see unavailable storage."""
        error = StorageUnavailable("Storage is unavailable", details={"operation": "initialize"})
        assert isinstance(error, DatabaseError)
        assert "operation=initialize" in str(error)

    def test_catching_base_class(self):
        with pytest.raises(FinanceAppError) as exc_info:
            raise DuplicateName("Category already exists", details={"name": "Rent"})
        assert exc_info.value.details["name"] == "Rent"

    def test_not_found_is_not_validation_error(self):
        assert not isinstance(NotFound("gone"), ValidationError)
