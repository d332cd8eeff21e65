"""
PostgreSQL driver for the Squizzle SDK.

This module implements the driver contract on asyncpg with:
- Connection pooling
- Transactions with a savepoint around each executed statement
- Session-level advisory locks polled until a timeout
- An append-only version history table

Author: Squizzle SDK
Version: 1.0.0
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..config import PostgresConfig
from ..core.interfaces import DatabaseDriver, UnlockFn
from ..core.types import AppliedVersion, Manifest
from ..exceptions import DatabaseError, LockError

# Optional dependency
try:
    import asyncpg
    ASYNCPG_AVAILABLE = True
except ImportError:
    ASYNCPG_AVAILABLE = False
    asyncpg = None

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT = 60.0
LOCK_POLL_INTERVAL = 0.5


def _truncate(sql: str) -> str:
    return sql[:100] + "..." if len(sql) > 100 else sql


class PostgresDriver(DatabaseDriver):
    """PostgreSQL driver with asyncpg."""

    name = "postgres"

    def __init__(
        self,
        config: Optional[PostgresConfig] = None,
        pool: Optional["asyncpg.Pool"] = None,
        connection: Optional["asyncpg.Connection"] = None,
    ):
        if not ASYNCPG_AVAILABLE:
            raise DatabaseError("asyncpg not installed - required for PostgreSQL support")

        self.config = config or PostgresConfig()
        self._pool = pool
        self._owns_pool = pool is None
        # Set on drivers handed to transaction callbacks
        self._connection = connection
        # asyncpg connections run one operation at a time
        self._connection_lock = asyncio.Lock() if connection is not None else None
        self.logger = logging.getLogger(__name__)

    @property
    def table(self) -> str:
        return f'"{self.config.schema_name}"."{self.config.table_name}"'

    def _require_pool(self) -> "asyncpg.Pool":
        if self._pool is None:
            raise DatabaseError("PostgreSQL driver is not connected")
        return self._pool

    async def connect(self) -> None:
        """Create the pool (if needed) and ensure the history table exists."""
        try:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    dsn=self.config.connection_dsn,
                    min_size=self.config.min_pool_size,
                    max_size=self.config.max_pool_size,
                    command_timeout=self.config.command_timeout,
                )
                self._owns_pool = True
            await self._ensure_version_table()
            self.logger.info(
                f"PostgreSQL driver connected with pool size {self.config.min_pool_size}-{self.config.max_pool_size}"
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise DatabaseError(f"Failed to connect: {e}", original_error=e) from e

    async def disconnect(self) -> None:
        if self._pool is not None and self._owns_pool and self._connection is None:
            await self._pool.close()
            self._pool = None
            self.logger.info("PostgreSQL driver disconnected")

    async def _ensure_version_table(self) -> None:
        schema, table = self.config.schema_name, self.config.table_name
        await self.execute(f"""
            CREATE SCHEMA IF NOT EXISTS "{schema}";

            CREATE TABLE IF NOT EXISTS {self.table} (
                id BIGSERIAL PRIMARY KEY,
                version VARCHAR(100) NOT NULL,
                checksum VARCHAR(128) NOT NULL,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
                applied_by VARCHAR(255) NOT NULL,
                success BOOLEAN NOT NULL,
                error TEXT,
                rollback_of VARCHAR(100),
                manifest JSONB NOT NULL DEFAULT '{{}}'::jsonb
            );

            CREATE INDEX IF NOT EXISTS idx_{table}_version ON {self.table} (version);
            CREATE INDEX IF NOT EXISTS idx_{table}_applied_at ON {self.table} (applied_at DESC);
        """)

    async def execute(self, sql: str) -> None:
        """
        Execute SQL.

        Inside a transaction each statement runs under its own savepoint,
        so a failing statement can be skipped without aborting the
        enclosing transaction. Calls sharing a transaction connection are
        serialized, so they may be issued concurrently.
        """
        try:
            if self._connection is not None:
                async with self._connection_lock, self._connection.transaction():
                    await self._connection.execute(sql)
            else:
                async with self._require_pool().acquire() as conn:
                    await conn.execute(sql)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise DatabaseError(f"Failed to execute SQL: {e}", query=_truncate(sql), original_error=e) from e

    async def query(self, sql: str) -> List[Dict[str, Any]]:
        try:
            if self._connection is not None:
                async with self._connection_lock:
                    rows = await self._connection.fetch(sql)
            else:
                async with self._require_pool().acquire() as conn:
                    rows = await conn.fetch(sql)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise DatabaseError(f"Failed to query: {e}", query=_truncate(sql), original_error=e) from e
        return [dict(row) for row in rows]

    async def transaction(self, fn: Callable[[DatabaseDriver], Awaitable[T]]) -> T:
        """Run ``fn`` on a dedicated connection inside one transaction."""
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    return await fn(PostgresDriver(self.config, pool=pool, connection=conn))
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise DatabaseError(f"Transaction failed: {e}", original_error=e) from e

    async def get_applied_versions(self) -> List[AppliedVersion]:
        rows = await self.query(f"""
            SELECT version, applied_at, applied_by, checksum, success, error, rollback_of
            FROM {self.table}
            ORDER BY applied_at DESC, id DESC
        """)
        return [
            AppliedVersion(
                version=row["version"],
                applied_at=row["applied_at"],
                applied_by=row["applied_by"],
                checksum=row["checksum"],
                success=row["success"],
                error=row["error"],
                rollback_of=row["rollback_of"],
            )
            for row in rows
        ]

    async def record_version(
        self,
        version: str,
        manifest: Optional[Manifest],
        success: bool,
        error: Optional[str] = None,
        rollback_of: Optional[str] = None,
    ) -> None:
        sql = f"""
            INSERT INTO {self.table}
                (version, checksum, applied_by, success, error, rollback_of, manifest)
            VALUES ($1, $2, COALESCE($3, current_user), $4, $5, $6, $7::jsonb)
        """
        args = (
            version,
            manifest.checksum if manifest is not None else "",
            self.config.applied_by,
            success,
            error,
            rollback_of,
            manifest.to_json(indent=None) if manifest is not None else "{}",
        )
        try:
            if self._connection is not None:
                async with self._connection_lock:
                    await self._connection.execute(sql, *args)
            else:
                async with self._require_pool().acquire() as conn:
                    await conn.execute(sql, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise DatabaseError(f"Failed to record version {version}: {e}", original_error=e) from e

    async def lock(self, key: str, timeout: Optional[float] = None) -> UnlockFn:
        """
        Acquire a session advisory lock on ``hashtext(key)``.

        The lock lives on a dedicated pooled connection that is returned to
        the pool on unlock.
        """
        if timeout is None:
            timeout = DEFAULT_LOCK_TIMEOUT
        pool = self._require_pool()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        conn = await pool.acquire()
        try:
            while True:
                if await conn.fetchval("SELECT pg_try_advisory_lock(hashtext($1))", key):
                    break
                if loop.time() >= deadline:
                    raise LockError(f"Lock {key} is already held by another process", lock_key=key)
                await asyncio.sleep(min(LOCK_POLL_INTERVAL, max(deadline - loop.time(), 0)))
        except LockError:
            await pool.release(conn)
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            await pool.release(conn)
            raise LockError(f"Failed to acquire lock {key}: {e}", lock_key=key, original_error=e) from e

        released = False

        async def unlock() -> None:
            nonlocal released
            if released:
                return
            released = True
            try:
                await conn.fetchval("SELECT pg_advisory_unlock(hashtext($1))", key)
            finally:
                await pool.release(conn)

        return unlock
