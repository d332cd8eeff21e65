"""
Migration engine.

Applies versioned artifacts to a database under a per-version named lock,
rolls them back with their bundled rollback scripts, and reports status.
The engine talks only to the ``DatabaseDriver``, ``ArtifactStorage`` and
``SecurityProvider`` interfaces.

Author: Squizzle SDK
Version: 1.0.0
"""

import asyncio
import inspect
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from ..config import EngineConfig
from ..exceptions import (
    ChecksumError,
    LockError,
    MigrationError,
    MigrationExecutionError,
    SecurityError,
    VersionConflictError,
    VersionError,
    VersionNotAppliedError,
)
from ..logging import CorrelationContext, MigrationEventType, MigrationLogger, get_migration_logger
from .artifact import decode
from .builder import BuiltArtifact
from .interfaces import ArtifactStorage, DatabaseDriver, SecurityProvider
from .manifest import compute_manifest_checksum
from .semver import Version
from .types import (
    AppliedVersion,
    Manifest,
    Migration,
    MigrationDirection,
    MigrationFailure,
    MigrationOptions,
    MigrationResult,
    MigrationStatus,
    MigrationType,
    VerificationResult,
    VersionStatus,
)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class MigrationEngine:
    """
    Orchestrates apply, rollback, status and verification of versions.

    Every apply runs the same sequence: lock, check history, pull, verify
    integrity, verify signature, extract, sort, execute and record. The
    lock is released on every exit path.
    """

    def __init__(
        self,
        driver: DatabaseDriver,
        storage: ArtifactStorage,
        security: Optional[SecurityProvider] = None,
        config: Optional[EngineConfig] = None,
        logger: Optional[MigrationLogger] = None,
    ):
        self.driver = driver
        self.storage = storage
        self.security = security
        self.config = config or EngineConfig()
        self.logger = logger or get_migration_logger("engine")

    def _default_options(self) -> MigrationOptions:
        return MigrationOptions(
            max_parallel=self.config.default_max_parallel,
            stop_on_error=self.config.stop_on_error,
        )

    def _lock_key(self, operation: str, version: str) -> str:
        return f"{self.config.lock_prefix}:{operation}:{version}"

    @asynccontextmanager
    async def _locked(self, key: str, timeout: Optional[float]):
        """Hold the named driver lock for the duration of the block."""
        if timeout is None:
            timeout = self.config.lock_timeout
        try:
            unlock = await self.driver.lock(key, timeout)
        except LockError:
            raise
        except Exception as e:
            raise LockError(f"Failed to acquire lock {key}: {e}", lock_key=key, original_error=e) from e

        self.logger.log_lock(key, acquired=True)
        try:
            yield
        finally:
            try:
                await unlock()
                self.logger.log_lock(key, acquired=False)
            except Exception as e:
                self.logger.error(f"Failed to release lock {key}: {e}", operation=key)

    # ------------------------------------------------------------------
    # Verification helpers
    # ------------------------------------------------------------------

    def _verify_integrity(self, version: str, artifact: bytes, manifest: Manifest) -> List[Migration]:
        """Check the manifest against the requested version and the artifact, then extract."""
        if manifest.version != version:
            raise VersionError(
                f"Artifact manifest declares version {manifest.version}, expected {version}",
                version=version,
            )

        actual = compute_manifest_checksum(manifest.files, manifest.checksum_algorithm)
        if actual != manifest.checksum:
            raise ChecksumError(
                f"Manifest checksum mismatch: expected {manifest.checksum}, got {actual}",
                expected_checksum=manifest.checksum,
                actual_checksum=actual,
            )

        return decode(artifact, manifest, self.config.migration_extension)

    async def _verify_signature(self, artifact: bytes, manifest: Manifest) -> None:
        if self.security is None or not manifest.signature:
            return
        try:
            valid = await self.security.verify(artifact, manifest.signature)
        except Exception as e:
            raise SecurityError(f"Signature verification failed: {e}", original_error=e) from e
        if not valid:
            raise SecurityError("Invalid artifact signature", details={"version": manifest.version})
        self.logger.info(
            f"Signature verified for {manifest.version}",
            event_type=MigrationEventType.SIGNATURE_VERIFIED,
            version=manifest.version,
        )

    @staticmethod
    def _sort_migrations(migrations: List[Migration]) -> List[Migration]:
        """Order by type priority, then lexically by path."""
        return sorted(migrations, key=lambda m: m.sort_key)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _call_hook(self, hook, *args) -> None:
        if hook is None:
            return
        try:
            outcome = hook(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            self.logger.warning(f"Migration hook failed for {args[0]}: {e}")

    async def _execute_one(
        self,
        tx: DatabaseDriver,
        migration: Migration,
        options: MigrationOptions,
        version: str,
    ) -> None:
        await self._call_hook(options.before_each, migration.path)
        self.logger.log_migration(version, migration.path, "running")
        start = time.perf_counter()
        try:
            await tx.execute(migration.sql)
        except Exception as e:
            self.logger.log_migration(version, migration.path, "failed", _elapsed_ms(start), str(e))
            await self._call_hook(options.after_each, migration.path, False)
            raise MigrationExecutionError(
                f"Failed to apply {migration.path}: {e}",
                migration_path=migration.path,
                original_error=e,
            ) from e
        self.logger.log_migration(version, migration.path, "success", _elapsed_ms(start))
        await self._call_hook(options.after_each, migration.path, True)

    async def _run_migrations(
        self,
        tx: DatabaseDriver,
        migrations: List[Migration],
        options: MigrationOptions,
        result: MigrationResult,
    ) -> None:
        """
        Execute ``migrations`` in order on ``tx``.

        With ``max_parallel`` above one, up to that many files are in
        flight at once and no new file starts after a fatal failure.
        """
        if options.max_parallel <= 1:
            for migration in migrations:
                try:
                    await self._execute_one(tx, migration, options, result.version)
                except MigrationExecutionError as e:
                    if options.stop_on_error:
                        raise
                    result.failures.append(MigrationFailure(migration.path, str(e.original_error or e)))
                else:
                    result.executed.append(migration.path)
            return

        semaphore = asyncio.Semaphore(options.max_parallel)
        aborted = False

        async def worker(migration: Migration) -> None:
            nonlocal aborted
            async with semaphore:
                if aborted:
                    return
                try:
                    await self._execute_one(tx, migration, options, result.version)
                except MigrationExecutionError as e:
                    if options.stop_on_error:
                        aborted = True
                        raise
                    result.failures.append(MigrationFailure(migration.path, str(e.original_error or e)))
                else:
                    result.executed.append(migration.path)

        outcomes = await asyncio.gather(*(worker(m) for m in migrations), return_exceptions=True)
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            raise errors[0]

    async def _record_failure(self, version: str, manifest: Manifest, error: BaseException) -> None:
        try:
            await self.driver.record_version(version, manifest, False, str(error))
        except Exception as record_error:
            self.logger.error(
                f"Failed to record failure of version {version}: {record_error}",
                version=version,
                metadata={'original_error': str(error)},
            )

    def _finish(self, result: MigrationResult, status: MigrationStatus) -> MigrationResult:
        result.status = status
        result.completed_at = datetime.now(timezone.utc)
        return result

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def apply(self, version: str, options: Optional[MigrationOptions] = None) -> MigrationResult:
        """
        Apply ``version`` to the database.

        Runs every ``drizzle``, ``custom`` and ``seed`` file of the artifact.
        ``rollback`` files are never run here; only ``rollback()`` executes them.

        Args:
            version: Version to apply
            options: Execution options; defaults come from the engine config

        Returns:
            Result describing what ran (or would run, for a dry run)

        Raises:
            VersionConflictError: If the version was already applied successfully
            LockError: If the version lock cannot be acquired
            ChecksumError: If the artifact does not match its manifest
            SecurityError: If the artifact signature is invalid
            MigrationExecutionError: If a migration fails with ``stop_on_error``
        """
        Version.parse(version)
        options = options or self._default_options()
        result = MigrationResult(version=version, status=MigrationStatus.PENDING, direction=MigrationDirection.UP)
        start = time.perf_counter()

        with CorrelationContext():
            self.logger.log_operation_started("apply", version, dry_run=options.dry_run)
            try:
                async with self._locked(self._lock_key("apply", version), options.timeout):
                    await self._apply_locked(version, options, result)
            except Exception as e:
                self._finish(result, MigrationStatus.FAILED)
                self.logger.log_operation_failed("apply", version, e)
                raise

            self.logger.log_operation_completed(
                "apply", version, _elapsed_ms(start),
                executed=len(result.executed), failures=len(result.failures),
            )
        return result

    async def _apply_locked(self, version: str, options: MigrationOptions, result: MigrationResult) -> None:
        history = await self.driver.get_applied_versions()
        if any(r.version == version and r.success for r in history):
            raise VersionConflictError(f"Version {version} already applied", version=version)

        artifact, manifest = await self.storage.pull(version)
        self.logger.info(
            f"Pulled artifact {version} ({len(artifact)} bytes)",
            event_type=MigrationEventType.ARTIFACT_PULLED,
            version=version,
        )

        try:
            migrations = self._verify_integrity(version, artifact, manifest)
            await self._verify_signature(artifact, manifest)

            ordered = self._sort_migrations([m for m in migrations if m.type != MigrationType.ROLLBACK])
            result.planned = [m.path for m in ordered]
            self.logger.log_plan(version, result.planned, dry_run=options.dry_run)

            if options.dry_run:
                self._finish(result, MigrationStatus.DRY_RUN)
                return

            result.status = MigrationStatus.RUNNING

            async def run(tx: DatabaseDriver) -> None:
                await self._run_migrations(tx, ordered, options, result)
                summary = None
                if result.failures:
                    summary = "; ".join(f"{f.path}: {f.error}" for f in result.failures)
                await tx.record_version(version, manifest, True, summary)

            await self.driver.transaction(run)
        except Exception as e:
            await self._record_failure(version, manifest, e)
            raise

        result.recorded_as = version
        self._finish(result, MigrationStatus.COMPLETED)
        self.logger.info(
            f"Recorded version {version}",
            event_type=MigrationEventType.VERSION_RECORDED,
            version=version,
            status="success",
        )

    async def rollback(self, version: str, options: Optional[MigrationOptions] = None) -> MigrationResult:
        """
        Roll back a successfully applied version.

        Runs the version's rollback scripts in reverse order and appends a
        ``rollback-{version}-{ms}`` history entry. Existing history rows are
        never modified.

        Raises:
            VersionNotAppliedError: If the version has no successful apply, or was already rolled back
            MigrationError: If the artifact carries no rollback scripts
        """
        Version.parse(version)
        options = options or self._default_options()
        result = MigrationResult(version=version, status=MigrationStatus.PENDING, direction=MigrationDirection.DOWN)
        start = time.perf_counter()

        with CorrelationContext():
            self.logger.log_operation_started("rollback", version, dry_run=options.dry_run)
            try:
                async with self._locked(self._lock_key("rollback", version), options.timeout):
                    await self._rollback_locked(version, options, result)
            except Exception as e:
                self._finish(result, MigrationStatus.FAILED)
                self.logger.log_operation_failed("rollback", version, e)
                raise

            self.logger.log_operation_completed("rollback", version, _elapsed_ms(start))
        return result

    async def _rollback_locked(self, version: str, options: MigrationOptions, result: MigrationResult) -> None:
        history = await self.driver.get_applied_versions()
        if not any(r.version == version and r.success for r in history):
            raise VersionNotAppliedError(
                f"Version {version} not found or not successfully applied",
                version=version,
            )
        if self._is_rolled_back(version, history):
            raise VersionNotAppliedError(f"Version {version} has already been rolled back", version=version)

        artifact, manifest = await self.storage.pull(version)
        migrations = self._verify_integrity(version, artifact, manifest)
        await self._verify_signature(artifact, manifest)

        rollbacks = [m for m in migrations if m.type == MigrationType.ROLLBACK]
        if not rollbacks:
            raise MigrationError(f"No rollback migrations found for version {version}", details={"version": version})

        ordered = list(reversed(self._sort_migrations(rollbacks)))
        result.planned = [m.path for m in ordered]
        self.logger.log_plan(version, result.planned, dry_run=options.dry_run)

        if options.dry_run:
            self._finish(result, MigrationStatus.DRY_RUN)
            return

        marker = f"rollback-{version}-{int(time.time() * 1000)}"
        result.status = MigrationStatus.RUNNING

        async def run(tx: DatabaseDriver) -> None:
            await self._run_migrations(tx, ordered, options, result)
            summary = None
            if result.failures:
                summary = "; ".join(f"{f.path}: {f.error}" for f in result.failures)
            await tx.record_version(marker, manifest, True, summary, rollback_of=version)

        await self.driver.transaction(run)
        result.recorded_as = marker
        self._finish(result, MigrationStatus.ROLLED_BACK)

    @staticmethod
    def _is_rolled_back(version: str, history: List[AppliedVersion]) -> bool:
        """Whether the newest successful record touching ``version`` is a rollback."""
        related = [
            r for r in history
            if r.success and (r.rollback_of == version or (r.version == version and not r.is_rollback))
        ]
        if not related:
            return False
        latest = max(related, key=lambda r: r.applied_at)
        return latest.rollback_of == version

    @classmethod
    def _current_version(cls, history: List[AppliedVersion]) -> Optional[str]:
        rolled_back = {r.rollback_of for r in history if r.success and r.rollback_of}
        candidates = [
            r for r in history
            if r.success and not r.is_rollback
            and not (r.version in rolled_back and cls._is_rolled_back(r.version, history))
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.applied_at).version

    async def status(self) -> VersionStatus:
        """Report the current version, full history and available versions."""
        history, available = await asyncio.gather(
            self.driver.get_applied_versions(),
            self.storage.list(),
        )
        return VersionStatus(current=self._current_version(history), applied=history, available=available)

    async def verify(self, version: str) -> VerificationResult:
        """
        Check that ``version`` could be applied, without applying it.

        Content problems are collected into ``errors`` instead of raised.
        """
        errors: List[str] = []
        try:
            if not await self.storage.exists(version):
                errors.append(f"Artifact for version {version} not found")
                return VerificationResult(valid=False, errors=errors)

            artifact, manifest = await self.storage.pull(version)

            try:
                self._verify_integrity(version, artifact, manifest)
            except (MigrationError, ChecksumError, VersionError) as e:
                errors.append(f"Integrity check failed: {e}")

            try:
                await self._verify_signature(artifact, manifest)
            except SecurityError as e:
                errors.append(str(e))

            try:
                await self.driver.query("SELECT 1")
            except Exception as e:
                errors.append(f"Database connection failed: {e}")

        except Exception as e:
            errors.append(f"Verification failed: {e}")

        return VerificationResult(valid=not errors, errors=errors)

    async def publish(self, built: BuiltArtifact) -> str:
        """
        Push a built artifact to storage.

        Raises:
            VersionConflictError: If the version is already stored or already applied
        """
        version = built.version
        if await self.storage.exists(version):
            raise VersionConflictError(f"Version {version} already exists in storage", version=version)

        history = await self.driver.get_applied_versions()
        if any(r.version == version and r.success for r in history):
            raise VersionConflictError(f"Version {version} already applied", version=version)

        location = await self.storage.push(version, built.artifact, built.manifest)
        self.logger.info(
            f"Published {version} to {location}",
            event_type=MigrationEventType.ARTIFACT_PUSHED,
            version=version,
            status="success",
        )
        return location
