"""Exception taxonomy for secret discovery, storage and delivery."""
from typing import Optional


class SecretSyncError(Exception):
    """Base class for secretsync errors."""
    pass


class ParseError(SecretSyncError):
    """A values file could not be read or parsed."""

    def __init__(self, source_location: str, reason: str):
        self.source_location = source_location
        self.reason = reason
        super().__init__(f"Failed to parse {source_location}: {reason}")


class DescriptorValidationError(SecretSyncError):
    """A declared secret is missing a required field or has an invalid generator."""

    def __init__(
        self,
        message: str,
        source_location: Optional[str] = None,
        chart_name: Optional[str] = None,
        remote_key: Optional[str] = None,
    ):
        self.source_location = source_location
        self.chart_name = chart_name
        self.remote_key = remote_key
        super().__init__(message)


class BackendError(SecretSyncError):
    """Base class for remote secret backend failures."""

    def __init__(self, message: str, remote_key: Optional[str] = None):
        self.remote_key = remote_key
        super().__init__(message)


class AuthenticationError(BackendError):
    """Credentials are missing, expired or rejected. Not retryable."""
    pass


class PermissionDeniedError(BackendError):
    """The identity lacks a permission on the project or secret. Not retryable."""
    pass


class TransientError(BackendError):
    """Network or quota failure; retried locally, fatal once retries are exhausted."""
    pass
