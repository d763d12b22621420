"""
Custom exceptions for offline sync storage.

All providers should raise these exceptions so the storage manager
can classify failures consistently:

- NetworkError: transient connectivity failure, retryable, triggers fallback
- AuthenticationError: session invalid or expired, triggers fallback
- ValidationError: malformed payload, fatal for a queued mutation
- StorageError: generic wrapper carrying the original cause
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all storage errors."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        operation: str | None = None,
        cause: BaseException | None = None,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.operation = operation
        self.cause = cause
        self.details = details or {}
        if provider:
            self.details.setdefault("provider", provider)
        if operation:
            self.details.setdefault("operation", operation)
        if cause is not None:
            self.details.setdefault("cause", str(cause))


class NetworkError(StorageError):
    """Raised when the remote store cannot be reached."""

    def __init__(
        self,
        provider: str,
        operation: str,
        cause: BaseException | None = None,
    ):
        message = f"Network error in {provider} during {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message, provider, operation, cause)


class AuthenticationError(StorageError):
    """Raised when the remote session is invalid or expired."""

    def __init__(
        self,
        provider: str,
        operation: str,
        cause: BaseException | None = None,
        reason: str | None = None,
    ):
        message = f"Authentication failed for {provider} during {operation}"
        if reason:
            message += f": {reason}"
        super().__init__(message, provider, operation, cause)
        self.reason = reason
        if reason:
            self.details["reason"] = reason


class ValidationError(StorageError):
    """Raised when a record or queued mutation is malformed."""

    def __init__(self, message: str, field: str | None = None, table: str | None = None):
        super().__init__(message, operation="validate")
        self.field = field
        self.table = table
        if field:
            self.details["field"] = field
        if table:
            self.details["table"] = table


class RecordNotFoundError(StorageError):
    """Raised when an update targets a record that does not exist."""

    def __init__(self, table: str, record_id: str, provider: str | None = None):
        super().__init__(
            f"Record {record_id} not found in {table}",
            provider,
            "update",
            details={"table": table, "record_id": record_id},
        )
        self.table = table
        self.record_id = record_id


class StorageUnavailableError(StorageError):
    """Raised when the local durable store cannot be opened."""

    def __init__(self, path: str, cause: BaseException | None = None):
        super().__init__(
            f"Durable store unavailable: {path}",
            "local",
            "initialize",
            cause,
            {"path": path},
        )
        self.path = path


class FallbackError(StorageError):
    """Raised when both the primary and the fallback provider failed."""

    def __init__(
        self,
        operation: str,
        primary_error: BaseException,
        fallback_error: BaseException,
    ):
        super().__init__(
            f"Both primary and fallback storage failed for {operation}",
            "storage_manager",
            operation,
            fallback_error,
            {
                "primary_error": str(primary_error),
                "fallback_error": str(fallback_error),
            },
        )
        self.primary_error = primary_error
        self.fallback_error = fallback_error


class DebounceCancelledError(StorageError):
    """Raised to callers whose debounced request was cleared before running."""

    def __init__(self, key: str):
        super().__init__(f"Debounced request cancelled: {key}", operation="debounce")
        self.key = key
