"""Core exception classes for the application."""


class NotFoundError(Exception):
    """Raised when a resource is not found."""


class CannotResumeError(Exception):
    """Raised when a provider session cannot be resumed."""


class ProviderError(Exception):
    """Raised when a provider API call fails after retries."""
