# squizzle-sdk/squizzle/__init__.py
"""
Squizzle SDK

Ships database schema migrations as immutable, versioned, checksummed
artifacts and applies them safely against a target database.

Example usage:
    from squizzle import ArtifactBuilder, MigrationEngine, InMemoryDriver, FilesystemStorage

    builder = ArtifactBuilder()
    built = await builder.build_from_directory(".", "1.0.0")

    engine = MigrationEngine(InMemoryDriver(), FilesystemStorage("./db/artifacts"))
    await engine.publish(built)
    result = await engine.apply("1.0.0")
"""

from .version import __version__
from .config import (
    EngineConfig,
    FilesystemStorageConfig,
    PostgresConfig,
    RegistryConfig,
    SecurityConfig,
    SquizzleConfig,
)
from .core import (
    AppliedVersion,
    ArtifactBuilder,
    ArtifactStorage,
    BuiltArtifact,
    DatabaseDriver,
    Manifest,
    MigrationEngine,
    MigrationOptions,
    MigrationResult,
    MigrationStatus,
    MigrationType,
    SecurityProvider,
    VerificationResult,
    Version,
    VersionStatus,
)
from .drivers import InMemoryDriver, PostgresDriver
from .storage import FilesystemStorage, OCIStorage, RegistryClient, create_storage
from .security import Ed25519SecurityProvider, HMACSecurityProvider, create_security_provider
from .logging import MigrationLogger, get_migration_logger
from .exceptions import (
    SquizzleError,
    MigrationError,
    MigrationExecutionError,
    ChecksumError,
    VersionError,
    VersionConflictError,
    VersionNotAppliedError,
    LockError,
    SecurityError,
    StorageError,
    ArtifactNotFoundError,
    DatabaseError,
)

# Package metadata
__title__ = "squizzle-sdk"
__author__ = "Squizzle Team"
__license__ = "MIT"

# Version info tuple for programmatic access
VERSION_INFO = tuple(int(part) for part in __version__.split('.'))

__all__ = [
    # Version
    "__version__",
    "VERSION_INFO",

    # Configuration
    "SquizzleConfig",
    "EngineConfig",
    "RegistryConfig",
    "FilesystemStorageConfig",
    "PostgresConfig",
    "SecurityConfig",

    # Core
    "MigrationEngine",
    "ArtifactBuilder",
    "BuiltArtifact",
    "Manifest",
    "Version",
    "AppliedVersion",
    "MigrationOptions",
    "MigrationResult",
    "MigrationStatus",
    "MigrationType",
    "VersionStatus",
    "VerificationResult",

    # Interfaces
    "DatabaseDriver",
    "ArtifactStorage",
    "SecurityProvider",

    # Implementations
    "InMemoryDriver",
    "PostgresDriver",
    "FilesystemStorage",
    "OCIStorage",
    "RegistryClient",
    "create_storage",
    "HMACSecurityProvider",
    "Ed25519SecurityProvider",
    "create_security_provider",

    # Logging
    "MigrationLogger",
    "get_migration_logger",

    # Exceptions
    "SquizzleError",
    "MigrationError",
    "MigrationExecutionError",
    "ChecksumError",
    "VersionError",
    "VersionConflictError",
    "VersionNotAppliedError",
    "LockError",
    "SecurityError",
    "StorageError",
    "ArtifactNotFoundError",
    "DatabaseError",
]
