"""
Custom exceptions for buildresolver.

This module defines domain-specific exceptions that separate descriptor
problems, provider failures and resolution misses so callers can react to
each category on its own.
"""


class BuildResolverError(Exception):
    """
    Base exception for all buildresolver errors.

    All custom exceptions in buildresolver inherit from this class
    to allow for easy catching of all library-specific errors.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        """
        Initialize the exception.

        Args:
            message: The primary error message.
            details: Optional additional context about the error.
        """
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(BuildResolverError):
    """
    Exception raised when configuration is invalid or missing.

    This includes:
    - Unreadable settings files
    - Invalid setting values
    - Descriptors that cannot be saved
    """

    pass


class ConfigFileError(ConfigurationError):
    """Exception raised when a configuration file cannot be read or written."""

    pass


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""

    pass


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(BuildResolverError):
    """
    Exception raised when a provider descriptor fails validation.

    Attributes:
        field: The descriptor field that failed validation.
        value: The offending value.
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: str | None = None,
        details: str | None = None,
    ) -> None:
        """
        Initialize the validation exception.

        Args:
            message: The primary error message.
            field: The name of the field that failed validation.
            value: The value that failed validation.
            details: Optional additional context.
        """
        super().__init__(message, details)
        self.field = field
        self.value = value


class DescriptorError(ValidationError):
    """Exception raised when a provider descriptor is malformed."""

    pass


class UnsupportedJsonPathError(ValidationError):
    """Exception raised for a JSON path outside the supported grammar."""

    pass


class PatternError(ValidationError):
    """Exception raised when a scrape or filename pattern cannot be compiled."""

    pass


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(BuildResolverError):
    """
    Base exception for failures local to one provider.

    Attributes:
        source_id: Identifier of the provider that failed, when known.
        url: The URL being requested, when relevant.
    """

    def __init__(
        self,
        message: str,
        source_id: str | None = None,
        url: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.source_id = source_id
        self.url = url


class NetworkError(ProviderError):
    """
    Exception raised for transport failures.

    This includes:
    - Connection timeouts
    - DNS resolution failures
    - Connection refused errors
    - Payloads that cannot be decoded
    """

    pass


class HTTPError(ProviderError):
    """
    Exception raised when a provider answers with an error status.

    Attributes:
        status_code: The HTTP status code returned by the server.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        source_id: str | None = None,
        url: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, source_id, url, details)
        self.status_code = status_code

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)


class AuthenticationError(ProviderError):
    """Exception raised when the official provider rejects every available token."""

    pass


# =============================================================================
# Resolution Errors
# =============================================================================


class ResolutionError(BuildResolverError):
    """Exception raised when a resolution request cannot be satisfied."""

    pass


class VersionNotFoundError(ResolutionError):
    """
    Exception raised when no source offers the requested build.

    Attributes:
        branch: The normalized branch that was searched.
        version: The requested target version.
        from_version: The origin version for diff or chain lookups.
    """

    def __init__(
        self,
        branch: str,
        version: int,
        from_version: int | None = None,
        details: str | None = None,
    ) -> None:
        if from_version is None:
            message = f"Version {version} for branch {branch} not found in any source"
        else:
            message = (
                f"Patch {from_version} -> {version} for branch {branch} "
                "not found in any source"
            )
        super().__init__(message, details)
        self.branch = branch
        self.version = version
        self.from_version = from_version


# =============================================================================
# Cache Errors
# =============================================================================


class CacheError(BuildResolverError):
    """
    Exception raised when a cache document cannot be handled.

    Attributes:
        path: The cache file involved.
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.path = path
