"""
In-process database driver.

Honours the full driver contract without a database: transactions are
snapshot based, locks are named ``asyncio.Lock`` objects, and every
``execute`` call is recorded so callers can observe exactly what ran.
Useful for dry environments and for exercising the engine in tests.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from ..core.interfaces import DatabaseDriver, UnlockFn
from ..core.types import AppliedVersion, Manifest
from ..exceptions import DatabaseError, LockError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InMemoryDriver(DatabaseDriver):
    """
    Recording driver backed by Python lists.

    Args:
        fail_on: SQL fragments; any executed statement containing one raises ``DatabaseError``
        applied_by: Identity written to history rows
    """

    name = "memory"

    def __init__(self, fail_on: Optional[Iterable[str]] = None, applied_by: str = "squizzle"):
        self.fail_on = set(fail_on or [])
        self.applied_by = applied_by
        self.available = True
        self.fail_record = False
        self.connected = False

        # Every execute call, committed or not
        self.execute_calls: List[str] = []
        # Statements whose transaction committed (or that ran outside one)
        self.executed: List[str] = []
        self._history: List[AppliedVersion] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._last_timestamp: Optional[datetime] = None

    def _now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _check_available(self) -> None:
        if not self.available:
            raise DatabaseError("Database unavailable")

    async def connect(self) -> None:
        self._check_available()
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def execute(self, sql: str) -> None:
        self._check_available()
        self.execute_calls.append(sql)
        for fragment in self.fail_on:
            if fragment in sql:
                raise DatabaseError(f"Failed to execute SQL: statement matched '{fragment}'", query=sql)
        self.executed.append(sql)

    async def query(self, sql: str) -> List[Dict[str, Any]]:
        self._check_available()
        if sql.strip().upper() == "SELECT 1":
            return [{"?column?": 1}]
        return []

    async def transaction(self, fn: Callable[[DatabaseDriver], Awaitable[T]]) -> T:
        """Run ``fn``; on error restore the executed statements and history."""
        self._check_available()
        executed, history = list(self.executed), list(self._history)
        try:
            return await fn(self)
        except BaseException:
            self.executed, self._history = executed, history
            logger.debug("In-memory transaction rolled back")
            raise

    async def get_applied_versions(self) -> List[AppliedVersion]:
        self._check_available()
        return sorted(self._history, key=lambda r: r.applied_at, reverse=True)

    async def record_version(
        self,
        version: str,
        manifest: Optional[Manifest],
        success: bool,
        error: Optional[str] = None,
        rollback_of: Optional[str] = None,
    ) -> None:
        self._check_available()
        if self.fail_record:
            raise DatabaseError("Failed to record version")
        self._history.append(
            AppliedVersion(
                version=version,
                applied_at=self._now(),
                applied_by=self.applied_by,
                checksum=manifest.checksum if manifest is not None else "",
                success=success,
                error=error,
                rollback_of=rollback_of,
            )
        )

    async def lock(self, key: str, timeout: Optional[float] = None) -> UnlockFn:
        mutex = self._locks.setdefault(key, asyncio.Lock())
        if timeout == 0:
            if mutex.locked():
                raise LockError(f"Lock {key} is already held", lock_key=key)
            await mutex.acquire()
        else:
            try:
                await asyncio.wait_for(mutex.acquire(), timeout)
            except asyncio.TimeoutError as e:
                raise LockError(f"Timed out waiting for lock {key}", lock_key=key, original_error=e) from e

        released = False

        async def unlock() -> None:
            nonlocal released
            if released:
                return
            released = True
            mutex.release()

        return unlock

    def is_locked(self, key: str) -> bool:
        mutex = self._locks.get(key)
        return mutex is not None and mutex.locked()
