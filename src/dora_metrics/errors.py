"""Custom exception types for the DORA metrics job."""


class DoraMetricsError(Exception):
    """Base exception for all recoverable DORA metrics errors."""


class ConfigurationError(DoraMetricsError):
    """Raised when runtime configuration values are missing or invalid."""


class AuthenticationError(DoraMetricsError):
    """Raised when credentials for GitHub, Jira or the token endpoint are unavailable or rejected."""


class ApiError(DoraMetricsError):
    """Raised when a remote API request fails or returns an unexpected response."""


class NotFoundError(ApiError):
    """Raised when a remote resource (for example a Jira issue) does not exist."""


class StoreError(DoraMetricsError):
    """Raised when a BigQuery read or write fails as a whole."""


class DataValidationError(DoraMetricsError):
    """Raised when provider payloads do not meet expected constraints."""
