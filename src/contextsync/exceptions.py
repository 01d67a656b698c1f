"""Custom exceptions for ContextSync.

This module defines a hierarchy of exceptions used throughout ContextSync.
All exceptions inherit from ContextSyncError, making it easy to catch
all ContextSync-related errors in one place.

Provider failures are classified into a small taxonomy that drives the
retry policy of the executor and the failure policy of the orchestrator.

Exception Hierarchy:
    ContextSyncError (base)
    ├── ConfigError - Configuration loading/validation failures
    ├── StorageError - Store access failures
    ├── InvalidRequestError - Missing or invalid caller input
    ├── IntegrationNotConnectedError - No active credential for an owner
    └── ProviderError (base for provider call failures)
        ├── AuthError - Invalid/expired credential, never retried
        ├── ThrottledError - Provider asked us to wait retry_after seconds
        ├── TransientError - Network/5xx, retried with backoff
        ├── SkippableError - Not found / forbidden / conflict, skipped
        └── DeprecatedEndpointError - Endpoint removed (HTTP 410)
"""

from typing import Any


class ContextSyncError(Exception):
    """Base exception for all ContextSync errors.

    Args:
        message: Human-readable error message.
        details: Optional dictionary with additional error context.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(ContextSyncError):
    """Raised when configuration loading or validation fails.

    Examples:
        - Invalid YAML syntax in .contextsync.yaml
        - Values that fail validation
    """


class StorageError(ContextSyncError):
    """Raised when the context store cannot complete an operation."""


class InvalidRequestError(ContextSyncError):
    """Raised when a caller supplies missing or invalid input.

    Surfaced to callers with a 400 status.
    """


class IntegrationNotConnectedError(ContextSyncError):
    """Raised when an owner has no active integration to sync from.

    Args:
        owner: The owner whose integrations were looked up.
        provider: The provider, or None when no provider is connected at all.
    """

    def __init__(self, owner: str, provider: str | None = None) -> None:
        target = provider or "any provider"
        super().__init__(
            f"Integration not connected for {target}",
            details={"owner": owner},
        )
        self.owner = owner
        self.provider = provider


class ProviderError(ContextSyncError):
    """Base exception for provider call failures.

    All classified provider errors inherit from this class.

    Args:
        message: Human-readable error message.
        provider: Name of the provider that raised the error.
        status_code: HTTP status code, when the failure came from a response.
        details: Optional dictionary with additional error context.
    """

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.provider = provider
        self.status_code = status_code

    def __str__(self) -> str:
        base = f"[{self.provider}] {self.message}"
        if self.details:
            return f"{base} | Details: {self.details}"
        return base


class AuthError(ProviderError):
    """Raised when a credential is invalid, expired or revoked.

    Never retried. Aborts the sync of the affected source.
    """


class ThrottledError(ProviderError):
    """Raised when a provider declares a rate limit.

    Args:
        message: Human-readable error message.
        provider: Name of the provider.
        retry_after: Seconds the provider asked us to wait.
        status_code: HTTP status code of the throttling response.
    """

    def __init__(
        self,
        message: str,
        provider: str,
        retry_after: float,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            provider,
            status_code=status_code,
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class TransientError(ProviderError):
    """Raised on network failures and 5xx responses.

    Retried with exponential backoff up to the executor's retry cap.
    """


class SkippableError(ProviderError):
    """Raised for expected steady-state noise: not found, forbidden, conflict.

    Counted and skipped by callers, never logged as an error.
    """


class DeprecatedEndpointError(ProviderError):
    """Raised when a provider reports an endpoint as gone (HTTP 410)."""
