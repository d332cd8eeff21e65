# squizzle-sdk/squizzle/exceptions.py
"""
Exception classes for the Squizzle SDK.

Every error raised by the engine, the codec, the storage backends and the
drivers derives from ``SquizzleError`` and carries a stable ``code`` so
callers can branch on the kind of failure without string matching.

Author: Squizzle SDK
Version: 1.0.0
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class SquizzleError(Exception):
    """Base exception for all Squizzle errors."""

    default_code = "SQUIZZLE_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
            "original_error": str(self.original_error) if self.original_error else None,
        }


# Migration Exceptions
class MigrationError(SquizzleError):
    """Exception raised for migration-level failures."""

    default_code = "MIGRATION_ERROR"


class MigrationExecutionError(MigrationError):
    """Exception raised when a migration's SQL fails."""

    default_code = "MIGRATION_EXECUTION_ERROR"

    def __init__(self, message: str, migration_path: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.migration_path = migration_path


class ChecksumError(SquizzleError):
    """Exception raised when artifact or file content does not match its checksum."""

    default_code = "CHECKSUM_ERROR"

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        expected_checksum: Optional[str] = None,
        actual_checksum: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.path = path
        self.expected_checksum = expected_checksum
        self.actual_checksum = actual_checksum


# Version Exceptions
class VersionError(SquizzleError):
    """Base exception for version bookkeeping errors."""

    default_code = "VERSION_ERROR"

    def __init__(self, message: str, version: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.version = version


class InvalidVersionError(VersionError):
    """Exception raised when a string is not a valid semantic version."""

    default_code = "INVALID_VERSION"


class VersionConflictError(VersionError):
    """Exception raised when a version is re-applied or re-published."""

    default_code = "VERSION_CONFLICT"


class VersionNotAppliedError(VersionConflictError):
    """Exception raised when rolling back a version that was never applied."""

    default_code = "VERSION_NOT_APPLIED"


class LockError(SquizzleError):
    """Exception raised when a named lock cannot be acquired."""

    default_code = "LOCK_ERROR"

    def __init__(self, message: str, lock_key: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.lock_key = lock_key


class SecurityError(SquizzleError):
    """Exception raised when a signature is invalid or cannot be produced."""

    default_code = "SECURITY_ERROR"


# Storage Exceptions
class StorageError(SquizzleError):
    """Base exception for artifact storage errors."""

    default_code = "STORAGE_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base_msg = self.message
        if self.status_code is not None:
            base_msg += f" (HTTP {self.status_code})"
        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["body"] = self.body
        return data


class ArtifactNotFoundError(StorageError):
    """Exception raised when a version is absent from storage."""

    default_code = "NOT_FOUND"


class RegistryTransportError(StorageError):
    """Exception raised when the registry cannot be reached or times out."""

    default_code = "TRANSPORT_ERROR"


class RegistryAuthenticationError(StorageError):
    """Exception raised when registry authentication fails."""

    default_code = "UNAUTHORIZED"


class DeletionUnsupportedError(StorageError):
    """Exception raised when the registry refuses the DELETE verb."""

    default_code = "UNSUPPORTED"


class DeletionForbiddenError(StorageError):
    """Exception raised when the credentials may not delete the tag."""

    default_code = "FORBIDDEN"


class DeletionVerificationError(StorageError):
    """Exception raised when a deleted tag is still resolvable."""

    default_code = "DELETE_NOT_VERIFIED"


class DatabaseError(SquizzleError):
    """Exception raised for driver-level database failures."""

    default_code = "DATABASE_ERROR"

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.query = query

