"""
Collaborator interfaces consumed by the migration engine.

The engine depends only on these abstractions. Concrete drivers, storage
backends and security providers live in ``squizzle.drivers``,
``squizzle.storage`` and ``squizzle.security``.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from .types import AppliedVersion, Manifest

T = TypeVar("T")

UnlockFn = Callable[[], Awaitable[None]]


class DatabaseDriver(ABC):
    """Contract every database driver must implement."""

    name: str = "abstract"

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and ensure bookkeeping tables exist."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release all connections."""

    @abstractmethod
    async def execute(self, sql: str) -> None:
        """
        Execute SQL without returning rows.

        Raises:
            DatabaseError: On SQL error
        """

    @abstractmethod
    async def query(self, sql: str) -> List[Dict[str, Any]]:
        """Execute SQL and return rows as dictionaries."""

    @abstractmethod
    async def transaction(self, fn: Callable[["DatabaseDriver"], Awaitable[T]]) -> T:
        """
        Run ``fn`` atomically.

        ``fn`` receives a transaction-bound driver supporting ``execute``,
        ``query`` and ``record_version``. The transaction commits when
        ``fn`` returns and rolls back when it raises.
        """

    @abstractmethod
    async def get_applied_versions(self) -> List[AppliedVersion]:
        """Return the full applied-version history, newest first."""

    @abstractmethod
    async def record_version(
        self,
        version: str,
        manifest: Optional[Manifest],
        success: bool,
        error: Optional[str] = None,
        rollback_of: Optional[str] = None,
    ) -> None:
        """Append one history row."""

    @abstractmethod
    async def lock(self, key: str, timeout: Optional[float] = None) -> UnlockFn:
        """
        Acquire a named mutual-exclusion lock.

        Args:
            key: Lock key
            timeout: Seconds to wait; ``None`` uses the driver default, ``0`` fails immediately

        Returns:
            Coroutine function releasing the lock

        Raises:
            LockError: If the lock cannot be acquired in time
        """


class ArtifactStorage(ABC):
    """Contract for artifact stores (registry, filesystem)."""

    @abstractmethod
    async def push(self, version: str, artifact: bytes, manifest: Manifest) -> str:
        """Store an artifact and return its location."""

    @abstractmethod
    async def pull(self, version: str) -> Tuple[bytes, Manifest]:
        """
        Fetch an artifact and its manifest.

        Raises:
            ArtifactNotFoundError: If the version is absent
        """

    @abstractmethod
    async def exists(self, version: str) -> bool:
        """Probe for a version without raising on absence."""

    @abstractmethod
    async def list(self) -> List[str]:
        """List stored versions, sorted ascending."""

    @abstractmethod
    async def delete(self, version: str) -> None:
        """Remove an artifact and its manifest."""

    @abstractmethod
    async def get_manifest(self, version: str) -> Manifest:
        """Fetch only the manifest of a version."""

    async def close(self) -> None:
        """Release transport resources."""


class SecurityProvider(ABC):
    """Optional signing collaborator."""

    @abstractmethod
    async def sign(self, data: bytes) -> str:
        """Produce an opaque signature string for ``data``."""

    @abstractmethod
    async def verify(self, data: bytes, signature: str) -> bool:
        """Return whether ``signature`` is valid for ``data``."""

    @abstractmethod
    async def generate_provenance(
        self, manifest: Manifest, build_info: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Build a provenance record describing how the artifact was produced."""
