"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional, Sequence


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors (bad date ranges, unknown tickets)."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class LLMException(ExternalServiceException):
    """Exception for LLM API failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("LLM Service", message, details)


class TransientProviderError(LLMException):
    """Timeout or network failure talking to a provider. Safe to retry."""


class MalformedOutputError(LLMException):
    """Generation output did not match the article schema. Never retried."""


class VectorStoreException(ExternalServiceException):
    """Exception for vector store failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Vector Store", message, details)


class DuplicateClusterError(DomainException):
    """An article with the same provenance key already exists."""

    def __init__(
        self,
        provenance_key: str,
        ticket_ids: Sequence[str] = (),
        details: Optional[dict] = None
    ):
        self.provenance_key = provenance_key
        self.ticket_ids = list(ticket_ids)
        super().__init__(
            f"Article already exists for provenance key {provenance_key}",
            details or {"provenance_key": provenance_key}
        )


class InvalidQueueTransitionError(DomainException):
    """A learning queue item was moved from a state that does not allow it."""

    def __init__(
        self,
        ticket_id: str,
        current_status: Optional[str],
        target_status: str,
        details: Optional[dict] = None
    ):
        self.ticket_id = ticket_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Cannot move queue item for ticket {ticket_id} "
            f"from {current_status or 'missing'} to {target_status}",
            details or {
                "ticket_id": ticket_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )
