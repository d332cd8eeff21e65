"""
Core migration machinery: versions, manifests, artifacts, the builder
and the migration engine.
"""

from .artifact import decode, encode, read_entries, read_manifest
from .builder import ArtifactBuilder, BuiltArtifact, collect_migration_files, validate_build
from .engine import MigrationEngine
from .interfaces import ArtifactStorage, DatabaseDriver, SecurityProvider
from .manifest import (
    ArtifactFile,
    compute_manifest_checksum,
    create_manifest,
    file_checksum,
    verify_manifest_checksum,
)
from .semver import Version, compare_versions, is_valid_version, next_version, sort_versions
from .types import (
    AppliedVersion,
    ChecksumAlgorithm,
    Manifest,
    ManifestFile,
    Migration,
    MigrationDirection,
    MigrationFailure,
    MigrationOptions,
    MigrationResult,
    MigrationStatus,
    MigrationType,
    PlatformInfo,
    VerificationResult,
    VersionStatus,
)

__all__ = [
    # Engine
    "MigrationEngine",
    "ArtifactBuilder",
    "BuiltArtifact",
    "collect_migration_files",
    "validate_build",

    # Interfaces
    "DatabaseDriver",
    "ArtifactStorage",
    "SecurityProvider",

    # Artifacts and manifests
    "ArtifactFile",
    "encode",
    "decode",
    "read_entries",
    "read_manifest",
    "create_manifest",
    "compute_manifest_checksum",
    "verify_manifest_checksum",
    "file_checksum",

    # Versions
    "Version",
    "compare_versions",
    "is_valid_version",
    "next_version",
    "sort_versions",

    # Types
    "AppliedVersion",
    "ChecksumAlgorithm",
    "Manifest",
    "ManifestFile",
    "Migration",
    "MigrationDirection",
    "MigrationFailure",
    "MigrationOptions",
    "MigrationResult",
    "MigrationStatus",
    "MigrationType",
    "PlatformInfo",
    "VerificationResult",
    "VersionStatus",
]
