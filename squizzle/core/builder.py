"""
Artifact building.

Collects migration files from a project tree, checks them for common
mistakes, and turns them into a manifest-backed artifact that can be
signed and published.

Author: Squizzle SDK
Version: 1.0.0
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .artifact import encode
from .interfaces import SecurityProvider
from .manifest import ArtifactFile, create_manifest
from .types import ChecksumAlgorithm, Manifest, MigrationType

logger = logging.getLogger(__name__)

DRIZZLE_DIR = "db/drizzle"
CUSTOM_DIR = "db/squizzle"
LARGE_FILE_THRESHOLD = 1024 * 1024

_DESTRUCTIVE_RE = re.compile(r"\bDROP\s+(TABLE|DATABASE|SCHEMA)\b", re.IGNORECASE)


def classify_custom_file(name: str) -> MigrationType:
    """Derive the migration type of a hand-written file from its name."""
    lowered = name.lower()
    if "rollback" in lowered:
        return MigrationType.ROLLBACK
    if "seed" in lowered:
        return MigrationType.SEED
    return MigrationType.CUSTOM


def _read_sql_dir(directory: Path) -> List[Path]:
    if not directory.is_dir():
        logger.warning(f"Migration directory not found: {directory}")
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == ".sql")


def collect_migration_files(
    root: Union[str, Path] = ".",
    drizzle_dir: str = DRIZZLE_DIR,
    custom_dir: str = CUSTOM_DIR,
) -> List[ArtifactFile]:
    """
    Collect migration files from a project.

    Generated migrations under ``drizzle_dir`` are stored as
    ``drizzle/<name>``; hand-written ones under ``custom_dir`` as
    ``squizzle/<name>`` and classified by file name.

    Args:
        root: Project root
        drizzle_dir: Generated migrations directory, relative to ``root``
        custom_dir: Hand-written migrations directory, relative to ``root``

    Returns:
        Files in deterministic path order
    """
    root = Path(root)
    files: List[ArtifactFile] = []

    for path in _read_sql_dir(root / drizzle_dir):
        files.append(ArtifactFile(f"drizzle/{path.name}", path.read_bytes(), MigrationType.DRIZZLE))

    for path in _read_sql_dir(root / custom_dir):
        files.append(ArtifactFile(f"squizzle/{path.name}", path.read_bytes(), classify_custom_file(path.name)))

    if not files:
        logger.warning(
            f"No migration files found in {root / drizzle_dir} or {root / custom_dir}; building an empty artifact"
        )

    files.sort(key=lambda f: f.path)
    return files


def detect_drizzle_kit_version(root: Union[str, Path] = ".") -> str:
    """Read the drizzle-kit version declared in the project's package.json."""
    package_json = Path(root) / "package.json"
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return "unknown"
    for section in ("devDependencies", "dependencies"):
        version = (data.get(section) or {}).get("drizzle-kit")
        if version:
            return version
    return "unknown"


def validate_build(files: Sequence[ArtifactFile]) -> List[str]:
    """
    Check a file set for likely mistakes.

    Returns:
        Human-readable warnings; an empty list means nothing was found
    """
    warnings: List[str] = []

    for f in files:
        if _DESTRUCTIVE_RE.search(f.content.decode("utf-8", errors="replace")):
            warnings.append(f"Destructive operations detected (DROP TABLE/DATABASE/SCHEMA) in {f.path}")

    forward = [f for f in files if f.type in (MigrationType.DRIZZLE, MigrationType.CUSTOM)]
    rollbacks = [f for f in files if f.type == MigrationType.ROLLBACK]
    if forward and not rollbacks:
        warnings.append("No rollback files found")

    large = [f for f in files if len(f.content) > LARGE_FILE_THRESHOLD]
    if large:
        warnings.append(f"{len(large)} large file(s) detected (>1MB)")

    if any(f.path.endswith(".bak") for f in files):
        warnings.append("Backup files detected (.bak) - these should not be included")

    return warnings


@dataclass
class BuiltArtifact:
    """An encoded artifact ready to be pushed."""
    version: str
    artifact: bytes
    manifest: Manifest
    files: List[ArtifactFile] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.artifact)

    @property
    def signed(self) -> bool:
        return self.manifest.signature is not None


class ArtifactBuilder:
    """
    Turns migration files into a (optionally signed) artifact.

    When a security provider is configured, the provenance record is
    embedded in the manifest before encoding and the signature over the
    encoded bytes is attached to the manifest stored next to the artifact.
    """

    def __init__(
        self,
        security: Optional[SecurityProvider] = None,
        algorithm: Union[str, ChecksumAlgorithm] = ChecksumAlgorithm.SHA256,
        build_info: Optional[Dict[str, Any]] = None,
    ):
        self.security = security
        self.algorithm = ChecksumAlgorithm(algorithm)
        self.build_info = build_info or {}

    async def build(
        self,
        version: str,
        files: Sequence[ArtifactFile],
        previous_version: Optional[str] = None,
        notes: str = "",
        author: Optional[str] = None,
        drizzle_kit: str = "unknown",
        dependencies: Optional[List[str]] = None,
    ) -> BuiltArtifact:
        """Build the artifact for ``version`` from ``files``."""
        files = list(files)
        warnings = validate_build(files)
        for warning in warnings:
            logger.warning(f"Build {version}: {warning}")

        manifest = create_manifest(
            version,
            files,
            previous_version=previous_version,
            notes=notes,
            author=author,
            drizzle_kit=drizzle_kit,
            dependencies=dependencies,
            algorithm=self.algorithm,
        )

        if self.security is not None:
            provenance = await self.security.generate_provenance(manifest, self.build_info)
            manifest = manifest.model_copy(update={"provenance": provenance})

        artifact = encode(files, manifest)

        if self.security is not None:
            signature = await self.security.sign(artifact)
            manifest = manifest.model_copy(update={"signature": signature})

        logger.info(
            f"Built artifact {version}: {len(files)} files, {len(artifact)} bytes, checksum {manifest.checksum[:12]}"
        )
        return BuiltArtifact(version=version, artifact=artifact, manifest=manifest, files=files, warnings=warnings)

    async def build_from_directory(
        self,
        root: Union[str, Path],
        version: str,
        **kwargs,
    ) -> BuiltArtifact:
        """Collect files under ``root`` and build them."""
        kwargs.setdefault("drizzle_kit", detect_drizzle_kit_version(root))
        return await self.build(version, collect_migration_files(root), **kwargs)
