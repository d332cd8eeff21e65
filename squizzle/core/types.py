"""
Core data model for the migration engine.

This module defines the manifest schema, the migration type enum with its
execution priority, the applied-version record, and the result objects
returned by engine operations.

Author: Squizzle SDK
Version: 1.0.0
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .semver import VERSION_PATTERN, is_valid_version


class MigrationType(str, Enum):
    """Kinds of migration file carried in an artifact."""
    DRIZZLE = "drizzle"
    CUSTOM = "custom"
    SEED = "seed"
    ROLLBACK = "rollback"

    @property
    def priority(self) -> int:
        """Execution priority; lower runs first."""
        return MIGRATION_TYPE_PRIORITY[self]


# Generated schema first, then hand-written SQL, then data, then reversals
MIGRATION_TYPE_PRIORITY: Dict[MigrationType, int] = {
    MigrationType.DRIZZLE: 0,
    MigrationType.CUSTOM: 1,
    MigrationType.SEED: 2,
    MigrationType.ROLLBACK: 3,
}


class MigrationDirection(Enum):
    """Direction of migration execution."""
    UP = "up"
    DOWN = "down"


class MigrationStatus(Enum):
    """Status of an engine operation."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DRY_RUN = "dry_run"
    ROLLED_BACK = "rolled_back"


class ChecksumAlgorithm(str, Enum):
    SHA256 = "sha256"
    SHA512 = "sha512"


_DIGEST_LENGTHS = {ChecksumAlgorithm.SHA256: 64, ChecksumAlgorithm.SHA512: 128}


class ManifestFile(BaseModel):
    """One file entry of a manifest."""

    path: str = Field(..., min_length=1, description="Relative path inside the artifact")
    checksum: str = Field(..., description="Hex digest of the raw file content")
    size: int = Field(..., ge=0, description="Content size in bytes")
    type: MigrationType = Field(..., description="Migration file type")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v):
        if v.startswith("/") or ".." in v.split("/"):
            raise ValueError(f"File path must be relative and stay inside the artifact: {v}")
        return v


class PlatformInfo(BaseModel):
    """Build-environment fingerprint."""

    os: str
    arch: str
    python: str


class Manifest(BaseModel):
    """Checksum-backed description of one version's artifact."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    version: str = Field(..., pattern=VERSION_PATTERN)
    previous_version: Optional[str] = Field(default=None, alias="previousVersion")
    created: datetime
    checksum: str
    checksum_algorithm: ChecksumAlgorithm = Field(
        default=ChecksumAlgorithm.SHA256, alias="checksumAlgorithm"
    )
    signature: Optional[str] = None
    drizzle_kit: str = Field(default="unknown", alias="drizzleKit")
    engine_version: str = Field(..., alias="engineVersion")
    notes: str = ""
    author: Optional[str] = None
    files: List[ManifestFile] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    platform: PlatformInfo
    provenance: Optional[Dict[str, Any]] = None

    @field_validator("previous_version")
    @classmethod
    def validate_previous_version(cls, v):
        if v is not None and not is_valid_version(v):
            raise ValueError(f"Invalid previous version: {v}")
        return v

    @field_validator("dependencies")
    @classmethod
    def validate_dependencies(cls, v):
        invalid = [d for d in v if not is_valid_version(d)]
        if invalid:
            raise ValueError(f"Invalid dependency versions: {invalid}")
        return v

    @model_validator(mode="after")
    def validate_digests(self):
        expected = _DIGEST_LENGTHS[self.checksum_algorithm]
        if len(self.checksum) != expected:
            raise ValueError(
                f"Manifest checksum must be {expected} hex characters for {self.checksum_algorithm.value}"
            )
        for entry in self.files:
            if len(entry.checksum) != expected:
                raise ValueError(f"Invalid checksum length for {entry.path}")
        return self

    def file_for(self, path: str) -> Optional[ManifestFile]:
        """Look up a file entry by path."""
        for entry in self.files:
            if entry.path == path:
                return entry
        return None

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Serialise with the wire (camelCase) field names."""
        return self.model_dump_json(by_alias=True, exclude_none=False, indent=indent)

    @classmethod
    def from_json(cls, data) -> "Manifest":
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8")
        return cls.model_validate_json(data)


@dataclass
class AppliedVersion:
    """One row of applied-version history."""
    version: str
    applied_at: datetime
    applied_by: str
    checksum: str
    success: bool
    error: Optional[str] = None
    rollback_of: Optional[str] = None

    @property
    def is_rollback(self) -> bool:
        return self.rollback_of is not None or self.version.startswith("rollback-")


@dataclass
class Migration:
    """A migration file extracted from an artifact for a single operation."""
    path: str
    sql: str
    type: MigrationType
    checksum: str

    @property
    def sort_key(self):
        return (self.type.priority, self.path)


BeforeHook = Callable[[str], Awaitable[None]]
AfterHook = Callable[[str, bool], Awaitable[None]]


@dataclass
class MigrationOptions:
    """Per-call options for apply and rollback."""
    dry_run: bool = False
    timeout: Optional[float] = None
    max_parallel: int = 1
    stop_on_error: bool = True
    before_each: Optional[BeforeHook] = None
    after_each: Optional[AfterHook] = None

    def __post_init__(self):
        if self.max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        if self.timeout is not None and self.timeout < 0:
            raise ValueError("timeout must be non-negative")


@dataclass
class MigrationFailure:
    """A migration file that failed while execution continued."""
    path: str
    error: str


@dataclass
class MigrationResult:
    """Result of an apply or rollback call."""
    version: str
    status: MigrationStatus
    direction: MigrationDirection
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    planned: List[str] = field(default_factory=list)
    executed: List[str] = field(default_factory=list)
    failures: List[MigrationFailure] = field(default_factory=list)
    recorded_as: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        """Get execution duration in seconds."""
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success(self) -> bool:
        return self.status in (MigrationStatus.COMPLETED, MigrationStatus.DRY_RUN) and not self.failures


@dataclass
class VersionStatus:
    """Snapshot returned by ``MigrationEngine.status``."""
    current: Optional[str]
    applied: List[AppliedVersion]
    available: List[str]


@dataclass
class VerificationResult:
    """Outcome of ``MigrationEngine.verify``."""
    valid: bool
    errors: List[str] = field(default_factory=list)
