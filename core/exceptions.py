"""
Centralized exception hierarchy for domain-specific errors.

This module provides custom exception classes that represent specific
error conditions in the visit detection core, so callers can tell
transient persistence failures apart from conditions that are retried
internally.
"""


class PlaceVisitsError(Exception):
    """Base exception for all application-specific errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(PlaceVisitsError):
    """Exception raised when data validation fails."""


class ConcurrencyConflictError(PlaceVisitsError):
    """Exception raised when a conditional write lost a race for its key."""


class VisitPersistenceError(PlaceVisitsError):
    """Exception raised when the visit store cannot complete an operation."""
