"""Common exceptions for domain and repository layers."""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base error for service layer."""


class RepositoryError(WebhookServiceError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class InvalidSubscriptionError(WebhookServiceError):
    """Raised when a subscription payload breaks registry rules."""
