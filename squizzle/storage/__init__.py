"""
Artifact storage backends.

Two interchangeable implementations of ``ArtifactStorage`` are provided:
a local directory (``FilesystemStorage``) and an OCI registry
(``OCIStorage``). ``create_storage`` picks one from configuration.
"""

from typing import Optional

import httpx

from ..config import SquizzleConfig, StorageType
from ..core.interfaces import ArtifactStorage
from .auth import AuthChallenge, Credentials, RegistryAuth, TokenCache, parse_challenge, resolve_credentials
from .filesystem import FilesystemStorage
from .oci import OCIStorage, RegistryClient


def create_storage(
    config: Optional[SquizzleConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ArtifactStorage:
    """
    Create the storage backend selected by ``config.storage_type``.

    Args:
        config: SDK configuration; read from the environment when omitted
        transport: Optional httpx transport for the registry client

    Returns:
        Configured storage backend
    """
    config = config or SquizzleConfig.from_env()
    if config.storage_type == StorageType.OCI:
        return OCIStorage(config.registry, transport=transport)
    return FilesystemStorage(config.filesystem.path)


__all__ = [
    "create_storage",
    "FilesystemStorage",
    "OCIStorage",
    "RegistryClient",
    "RegistryAuth",
    "TokenCache",
    "AuthChallenge",
    "Credentials",
    "parse_challenge",
    "resolve_credentials",
]
