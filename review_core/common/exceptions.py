"""
Common Exception Classes

This module defines the error taxonomy shared by the scheduler services:
misses, conflicts, degraded dependencies and invalid input.
"""

from typing import Any, Optional


class BaseError(Exception):
    """Base class for all custom exceptions."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        """
        Initialize the exception.

        Args:
            message: Error message
            original_exception: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.original_exception = original_exception


class DatabaseError(BaseError):
    """Exception raised for durable store errors."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(f"Database error: {message}", original_exception)


class StoreError(DatabaseError):
    """A write to the system of record failed; the operation must be retried."""
    pass


class CacheError(BaseError):
    """Exception raised by cache backends."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(f"Cache error: {message}", original_exception)


class DegradedDependencyError(CacheError):
    """
    A fast-tier dependency (cache, queue, token registry) is unreachable.

    Raised by the Redis backend and by the queue and session registry when
    their state cannot be read or written. Callers recover from this locally
    by falling back to the durable store or to a documented degraded mode;
    it is never surfaced by the public scheduler operations.
    """

    def __init__(
        self,
        dependency: str,
        message: str,
        original_exception: Optional[Exception] = None
    ):
        """
        Initialize the degraded dependency error.

        Args:
            dependency: Name of the unreachable dependency
            message: Error message
            original_exception: Underlying client exception
        """
        super().__init__(f"{dependency} unavailable: {message}", original_exception)
        self.dependency = dependency


class ValidationError(BaseError):
    """Exception raised for validation errors."""

    def __init__(self, message: str, errors: Optional[dict] = None):
        """
        Initialize the validation error.

        Args:
            message: Error message
            errors: Dictionary of validation errors
        """
        super().__init__(f"Validation error: {message}")
        self.errors = errors or {}


class InvalidInputError(ValidationError):
    """Malformed feedback kind, out-of-range level or similar bad input."""
    pass


class ConfigurationError(BaseError):
    """Exception raised for configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(f"Configuration error: {message}")
        self.config_key = config_key


class NotFoundError(BaseError):
    """Exception raised when a resource is not found."""

    def __init__(self, resource_type: str, resource_id: Any):
        """
        Initialize the not found error.

        Args:
            resource_type: Type of resource that wasn't found
            resource_id: ID of the resource that wasn't found
        """
        super().__init__(f"{resource_type} with ID {resource_id} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(BaseError):
    """
    The requested transition collides with the current state.

    Raised when completing an already closed schedule or when creating a
    second pending schedule for the same (user, item) pair. State is left
    unchanged.
    """

    def __init__(self, resource_type: str, identifier: Any, message: Optional[str] = None):
        """
        Initialize the conflict error.

        Args:
            resource_type: Type of resource involved
            identifier: Identifier of the conflicting resource
            message: Optional detail message
        """
        detail = message or "conflicts with current state"
        super().__init__(f"{resource_type} {identifier}: {detail}")
        self.resource_type = resource_type
        self.identifier = identifier


class InvalidTokenError(BaseError):
    """A token could not be decoded."""

    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)
