"""
Manifest builder.

Produces the deterministic, checksum-backed description of a version from
a set of named file contents. The overall checksum is computed over
``(path, per-file checksum)`` pairs sorted by path, so the collection order
of the input files never changes the result.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Union

from ..version import ENGINE_VERSION, get_platform_info
from .types import ChecksumAlgorithm, Manifest, ManifestFile, MigrationType


@dataclass
class ArtifactFile:
    """A file to be packaged into an artifact."""
    path: str
    content: bytes
    type: MigrationType

    def __post_init__(self):
        if isinstance(self.content, str):
            self.content = self.content.encode("utf-8")
        if not isinstance(self.type, MigrationType):
            self.type = MigrationType(self.type)


def file_checksum(content: bytes, algorithm: Union[str, ChecksumAlgorithm] = ChecksumAlgorithm.SHA256) -> str:
    """Hex digest of raw file content."""
    return hashlib.new(ChecksumAlgorithm(algorithm).value, content).hexdigest()


def compute_manifest_checksum(
    files: Iterable[ManifestFile],
    algorithm: Union[str, ChecksumAlgorithm] = ChecksumAlgorithm.SHA256,
) -> str:
    """Hash the sorted ``(path, checksum)`` pairs of a file set."""
    digest = hashlib.new(ChecksumAlgorithm(algorithm).value)
    for entry in sorted(files, key=lambda f: f.path):
        digest.update(entry.path.encode("utf-8"))
        digest.update(entry.checksum.encode("utf-8"))
    return digest.hexdigest()


def create_manifest(
    version: str,
    files: Sequence[ArtifactFile],
    previous_version: Optional[str] = None,
    notes: str = "",
    author: Optional[str] = None,
    drizzle_kit: str = "unknown",
    dependencies: Optional[List[str]] = None,
    algorithm: Union[str, ChecksumAlgorithm] = ChecksumAlgorithm.SHA256,
    created: Optional[datetime] = None,
) -> Manifest:
    """
    Build a manifest for ``files``.

    Args:
        version: Version the artifact will be published under
        files: Files to describe
        previous_version: Informational back-reference
        notes: Free-text release notes
        author: Who built the artifact
        drizzle_kit: Version string of the tool that generated baseline migrations
        dependencies: Versions this one presupposes (advisory)
        algorithm: Digest algorithm for per-file and overall checksums
        created: Override for the creation timestamp

    Returns:
        Validated manifest

    Raises:
        pydantic.ValidationError: If the version or digests are malformed
    """
    algorithm = ChecksumAlgorithm(algorithm)
    entries = [
        ManifestFile(
            path=f.path,
            checksum=file_checksum(f.content, algorithm),
            size=len(f.content),
            type=f.type,
        )
        for f in files
    ]

    return Manifest.model_validate(
        {
            "version": version,
            "previousVersion": previous_version,
            "created": created or datetime.now(timezone.utc),
            "checksum": compute_manifest_checksum(entries, algorithm),
            "checksumAlgorithm": algorithm,
            "drizzleKit": drizzle_kit,
            "engineVersion": ENGINE_VERSION,
            "notes": notes,
            "author": author,
            "files": entries,
            "dependencies": list(dependencies or []),
            "platform": get_platform_info(),
        }
    )


def verify_manifest_checksum(manifest: Manifest) -> bool:
    """Check that the manifest checksum matches its file list."""
    return compute_manifest_checksum(manifest.files, manifest.checksum_algorithm) == manifest.checksum
