"""
Custom exceptions for the Residence Manager.

Provides a hierarchy of exceptions for better error handling and debugging.
"""

from typing import Any, Dict, List, Optional


class ResidenceError(Exception):
    """Base exception for all Residence Manager errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(ResidenceError):
    """Raised when there are configuration issues."""
    pass


class DataAccessError(ResidenceError):
    """Base class for data access errors."""
    pass


class NetworkError(DataAccessError):
    """The API could not be reached or did not answer (connect error, timeout)."""
    pass


class ServerError(DataAccessError):
    """The API answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ValidationError(ResidenceError):
    """Client-side validation failed before a request was sent."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.missing_fields = missing_fields or []


class StaleLoadError(ResidenceError):
    """A load was superseded by a newer one while it was in flight."""

    def __init__(self, generation: int, current: int):
        super().__init__(f"Load generation {generation} superseded by {current}")
        self.generation = generation
        self.current = current
