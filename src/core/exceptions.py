"""
Core Exceptions
================

Exception hierarchy of the contract performance service.

The batch catches ApplicationException per contract and per metric and
keeps going; the HTTP layer maps the subclasses to status codes.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """A domain invariant was violated (e.g. merging metrics of different keys)."""


class RepositoryException(ApplicationException):
    """The contract, order or metrics store failed. Retried per metric by the batch."""


class ValidationException(ApplicationException):
    """Caller input was rejected (empty window, bad level, missing reviewer)."""


class ResourceNotFoundException(ApplicationException):
    """A contract or metric id did not resolve."""

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
    """Rule tables or settings could not be loaded."""


class ContractConfigurationException(ConfigurationException):
    """Raised when a contract's SLA terms cannot be resolved into targets."""

    def __init__(
        self,
        contract_id: str,
        reason: str,
        details: Optional[dict] = None
    ):
        self.contract_id = contract_id
        self.reason = reason
        super().__init__(
            f"Invalid SLA configuration for contract {contract_id}: {reason}",
            details or {"contract_id": contract_id, "reason": reason}
        )


class ExternalServiceException(ApplicationException):
    """An outbound integration failed."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class NotificationException(ExternalServiceException):
    """Posting an escalation to Slack failed after retries."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notification Service", message, details)
