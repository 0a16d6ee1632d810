"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

Repositories raise these at the I/O boundary; services translate them into
neutral results so they never reach the inbox caller. The few that escape
a route are mapped to HTTP responses by the shared exception handlers.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""

    status_code = 503


class SchemaUnavailableException(RepositoryException):
    """A relation or column needed by a query is not deployed yet."""

    def __init__(
        self,
        relation: str,
        columns: Optional[list] = None,
        details: Optional[dict] = None
    ):
        self.relation = relation
        self.columns = list(columns or [])
        message = f"Relation '{relation}' unavailable"
        if self.columns:
            message += f" (columns: {', '.join(self.columns)})"
        super().__init__(message, details)


class ValidationException(ApplicationException):
    """Request input that passed schema validation but is still unusable."""

    status_code = 422


class ConfigurationException(ApplicationException):
    """Exception for configuration errors detected at startup."""
