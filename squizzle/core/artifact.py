"""
Artifact codec.

An artifact is a gzip-compressed tar archive holding every manifest file at
its declared relative path plus ``manifest.json``. Archives are written with
fixed member metadata so the same inputs always produce the same bytes.
"""

import gzip
import io
import logging
import tarfile
from typing import Dict, List, Sequence

from ..exceptions import ChecksumError, MigrationError
from .manifest import ArtifactFile, file_checksum
from .types import Manifest, Migration

MANIFEST_FILENAME = "manifest.json"
MIGRATION_EXTENSION = ".sql"

logger = logging.getLogger(__name__)


def _add_member(archive: tarfile.TarFile, name: str, content: bytes) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(content)
    info.mtime = 0
    info.mode = 0o644
    info.uname = info.gname = ""
    archive.addfile(info, io.BytesIO(content))


def _normalize(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name


def encode(files: Sequence[ArtifactFile], manifest: Manifest) -> bytes:
    """
    Pack ``files`` and ``manifest`` into a single archive blob.

    Args:
        files: Files to include, each stored at its declared path
        manifest: Manifest describing the files

    Returns:
        gzip-compressed tar bytes
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as archive:
        for f in sorted(files, key=lambda item: item.path):
            _add_member(archive, f.path, f.content)
        _add_member(archive, MANIFEST_FILENAME, manifest.to_json().encode("utf-8"))
    # mtime=0 keeps the gzip header stable across builds
    return gzip.compress(buffer.getvalue(), compresslevel=9, mtime=0)


def read_entries(artifact: bytes, extension: str = MIGRATION_EXTENSION) -> Dict[str, bytes]:
    """
    Stream the archive and keep the content of entries ending in ``extension``.

    Raises:
        MigrationError: If the archive cannot be read
    """
    entries: Dict[str, bytes] = {}
    try:
        with tarfile.open(fileobj=io.BytesIO(artifact), mode="r|gz") as archive:
            for member in archive:
                if not member.isfile():
                    continue
                name = _normalize(member.name)
                if not name.endswith(extension):
                    continue
                handle = archive.extractfile(member)
                if handle is None:
                    continue
                entries[name] = handle.read()
    except (tarfile.TarError, OSError, EOFError) as e:
        raise MigrationError("Failed to extract migrations", original_error=e) from e
    return entries


def read_manifest(artifact: bytes) -> Manifest:
    """Read the manifest embedded in an artifact."""
    entries = read_entries(artifact, extension=MANIFEST_FILENAME)
    content = entries.get(MANIFEST_FILENAME)
    if content is None:
        raise MigrationError(f"Artifact does not contain {MANIFEST_FILENAME}")
    return Manifest.from_json(content)


def decode(artifact: bytes, manifest: Manifest, extension: str = MIGRATION_EXTENSION) -> List[Migration]:
    """
    Extract migrations from ``artifact`` and verify them against ``manifest``.

    Archive entries not referenced by the manifest are ignored. The manifest
    is never modified.

    Returns:
        Migrations in manifest order

    Raises:
        MigrationError: If a manifest file is missing from the archive or is not UTF-8
        ChecksumError: If a file's content does not match its declared checksum
    """
    entries = read_entries(artifact, extension)
    wanted = [f for f in manifest.files if f.path.endswith(extension)]

    missing = [f.path for f in wanted if f.path not in entries]
    if missing:
        raise MigrationError(
            "Failed to extract migrations",
            details={"missing": missing, "version": manifest.version},
        )

    migrations = []
    for entry in wanted:
        content = entries[entry.path]
        actual = file_checksum(content, manifest.checksum_algorithm)
        if actual != entry.checksum:
            raise ChecksumError(
                f"Checksum mismatch for {entry.path}: expected {entry.checksum}, got {actual}",
                path=entry.path,
                expected_checksum=entry.checksum,
                actual_checksum=actual,
            )
        try:
            sql = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MigrationError(
                f"Migration {entry.path} is not valid UTF-8",
                details={"path": entry.path, "version": manifest.version},
                original_error=e,
            ) from e
        migrations.append(
            Migration(
                path=entry.path,
                sql=sql,
                type=entry.type,
                checksum=entry.checksum,
            )
        )

    logger.debug(f"Extracted {len(migrations)} migrations for version {manifest.version}")
    return migrations
