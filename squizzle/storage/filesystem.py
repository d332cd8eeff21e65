"""
Filesystem artifact storage.

Stores each version as ``squizzle-v{version}.tar.gz`` with its manifest
alongside as ``squizzle-v{version}.manifest.json``. Intended for local
development and CI pipelines that ship artifacts as build outputs.
"""

import logging
import os
import re
from pathlib import Path
from typing import List, Optional, Tuple, Union

import aiofiles
from pydantic import ValidationError

from ..core.artifact import read_manifest
from ..core.interfaces import ArtifactStorage
from ..core.semver import Version, sort_versions
from ..core.types import Manifest
from ..exceptions import ArtifactNotFoundError, MigrationError, StorageError

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "squizzle-v"
ARTIFACT_SUFFIX = ".tar.gz"
MANIFEST_SUFFIX = ".manifest.json"

_ARTIFACT_RE = re.compile(rf"^{re.escape(ARTIFACT_PREFIX)}(?P<version>.+){re.escape(ARTIFACT_SUFFIX)}$")


class FilesystemStorage(ArtifactStorage):
    """Artifact storage backed by a local directory."""

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _paths(self, version: str) -> Tuple[Path, Path]:
        # Parsing rejects anything that could escape base_path
        version = str(Version.parse(version))
        stem = f"{ARTIFACT_PREFIX}{version}"
        return (
            self.base_path / f"{stem}{ARTIFACT_SUFFIX}",
            self.base_path / f"{stem}{MANIFEST_SUFFIX}",
        )

    @staticmethod
    async def _write_atomic(path: Path, data: bytes) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(data)
        os.replace(tmp, path)

    async def push(self, version: str, artifact: bytes, manifest: Manifest) -> str:
        artifact_path, manifest_path = self._paths(version)
        try:
            await self._write_atomic(artifact_path, artifact)
            await self._write_atomic(manifest_path, manifest.to_json().encode("utf-8"))
        except OSError as e:
            raise StorageError(f"Failed to write artifact {version}: {e}", original_error=e) from e

        logger.info(f"Stored artifact {version} at {artifact_path}")
        return str(artifact_path)

    async def pull(self, version: str) -> Tuple[bytes, Manifest]:
        artifact_path, manifest_path = self._paths(version)
        if not artifact_path.exists():
            raise ArtifactNotFoundError(f"Artifact not found: {version}", details={"path": str(artifact_path)})

        try:
            async with aiofiles.open(artifact_path, "rb") as f:
                artifact = await f.read()
        except OSError as e:
            raise StorageError(f"Failed to read artifact {version}: {e}", original_error=e) from e

        return artifact, await self._load_manifest(version, manifest_path, artifact)

    async def _load_manifest(self, version: str, manifest_path: Path, artifact: Optional[bytes] = None) -> Manifest:
        if manifest_path.exists():
            try:
                async with aiofiles.open(manifest_path, "rb") as f:
                    return Manifest.from_json(await f.read())
            except (OSError, ValidationError) as e:
                raise StorageError(f"Failed to read manifest for {version}: {e}", original_error=e) from e

        if artifact is None:
            raise ArtifactNotFoundError(f"Manifest not found: {version}", details={"path": str(manifest_path)})

        logger.warning(f"No manifest file for {version}; using the manifest embedded in the artifact")
        try:
            return read_manifest(artifact)
        except (MigrationError, ValidationError) as e:
            raise StorageError(f"Failed to read manifest for {version}: {e}", original_error=e) from e

    async def exists(self, version: str) -> bool:
        artifact_path, _ = self._paths(version)
        return artifact_path.exists()

    async def list(self) -> List[str]:
        names = []
        for entry in self.base_path.iterdir():
            match = _ARTIFACT_RE.match(entry.name)
            if match and entry.is_file():
                names.append(match.group("version"))
        return sort_versions(names)

    async def delete(self, version: str) -> None:
        artifact_path, manifest_path = self._paths(version)
        if not artifact_path.exists() and not manifest_path.exists():
            logger.debug(f"Artifact {version} already absent")
            return
        for path in (artifact_path, manifest_path):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageError(f"Failed to delete {path.name}: {e}", original_error=e) from e
        logger.info(f"Deleted artifact {version}")

    async def get_manifest(self, version: str) -> Manifest:
        artifact_path, manifest_path = self._paths(version)
        if not artifact_path.exists():
            raise ArtifactNotFoundError(f"Artifact not found: {version}")
        if manifest_path.exists():
            return await self._load_manifest(version, manifest_path)
        _, manifest = await self.pull(version)
        return manifest
