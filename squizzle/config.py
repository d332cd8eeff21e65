"""
Configuration for the Squizzle migration SDK.

This module holds the settings for the migration engine and its
collaborators: artifact storage (filesystem or OCI registry), the
PostgreSQL driver and the optional signing provider. Every model can be
built directly or loaded from ``SQUIZZLE_*`` environment variables.

Author: Squizzle SDK
Version: 1.0.0
"""

import os
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, Field, field_validator


def _env_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class StorageType(str, Enum):
    """Artifact storage backends."""
    FILESYSTEM = "filesystem"
    OCI = "oci"


class SecurityProviderType(str, Enum):
    """Signing providers."""
    NONE = "none"
    HMAC = "hmac"
    ED25519 = "ed25519"


class EngineConfig(BaseModel):
    """Migration engine behaviour."""

    lock_prefix: str = Field(
        default="squizzle",
        description="Prefix for named lock keys"
    )

    lock_timeout: Optional[float] = Field(
        default=30.0,
        description="Seconds to wait for the version lock (0 fails immediately)"
    )

    default_max_parallel: int = Field(
        default=1,
        description="Migrations executed concurrently within one version"
    )

    stop_on_error: bool = Field(
        default=True,
        description="Abort the version on the first failing migration"
    )

    migration_extension: str = Field(
        default=".sql",
        description="Extension of executable migration files inside an artifact"
    )

    @field_validator('lock_timeout')
    @classmethod
    def validate_lock_timeout(cls, v):
        """Validate lock timeout."""
        if v is not None and v < 0:
            raise ValueError("lock_timeout must be non-negative")
        return v

    @field_validator('default_max_parallel')
    @classmethod
    def validate_max_parallel(cls, v):
        """Validate parallelism."""
        if v < 1:
            raise ValueError("default_max_parallel must be at least 1")
        return v

    @field_validator('migration_extension')
    @classmethod
    def validate_extension(cls, v):
        if not v.startswith("."):
            v = f".{v}"
        return v


class RegistryConfig(BaseModel):
    """OCI registry connection settings."""

    registry: str = Field(
        default="localhost:5000",
        description="Registry host, optionally with scheme"
    )

    repository: str = Field(
        default="squizzle-artifacts",
        description="Repository holding the migration artifacts"
    )

    username: Optional[str] = Field(default=None, description="Registry username")
    password: Optional[str] = Field(default=None, description="Registry password or token")

    insecure: bool = Field(
        default=False,
        description="Use plain HTTP instead of HTTPS"
    )

    timeout: float = Field(
        default=30.0,
        description="Per-request timeout (seconds)"
    )

    tag_prefix: str = Field(
        default="v",
        description="Prefix of version tags"
    )

    page_size: Optional[int] = Field(
        default=None,
        description="Requested tags per page when listing"
    )

    token_expiry_margin: float = Field(
        default=10.0,
        description="Seconds subtracted from a token's declared lifetime"
    )

    docker_config_path: Optional[Path] = Field(
        default=None,
        description="Docker config.json used for credential lookup"
    )

    @field_validator('registry')
    @classmethod
    def validate_registry(cls, v):
        """Validate registry host."""
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("registry cannot be empty")
        return v

    @field_validator('repository')
    @classmethod
    def validate_repository(cls, v):
        v = v.strip().strip("/")
        if not v:
            raise ValueError("repository cannot be empty")
        if v != v.lower():
            raise ValueError("repository name must be lowercase")
        return v

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @field_validator('page_size')
    @classmethod
    def validate_page_size(cls, v):
        if v is not None and v < 1:
            raise ValueError("page_size must be at least 1")
        return v

    @property
    def base_url(self) -> str:
        """Registry base URL including scheme."""
        if self.registry.startswith(("http://", "https://")):
            return self.registry
        scheme = "http" if self.insecure else "https"
        return f"{scheme}://{self.registry}"

    @property
    def host(self) -> str:
        """Registry host without scheme, used as the credential key."""
        return self.registry.split("://", 1)[-1]


class FilesystemStorageConfig(BaseModel):
    """Local directory artifact storage."""

    path: Path = Field(
        default=Path("./db/artifacts"),
        description="Directory holding artifacts and manifests"
    )

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        if isinstance(v, str):
            v = Path(v)
        return v


class PostgresConfig(BaseModel):
    """PostgreSQL driver settings."""

    dsn: Optional[str] = Field(default=None, description="Full connection string")
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    database: str = Field(default="postgres", description="Database name")
    user: str = Field(default="postgres", description="Database user")
    password: Optional[str] = Field(default=None, description="Database password")

    min_pool_size: int = Field(default=1, description="Minimum pool connections")
    max_pool_size: int = Field(default=5, description="Maximum pool connections")
    command_timeout: Optional[float] = Field(
        default=None,
        description="Statement timeout applied by the pool (seconds)"
    )

    schema_name: str = Field(default="squizzle", description="Schema holding the history table")
    table_name: str = Field(default="squizzle_versions", description="History table name")
    applied_by: Optional[str] = Field(
        default=None,
        description="Identity written to history rows (defaults to the connecting user)"
    )

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_pool_size')
    @classmethod
    def validate_pool_size(cls, v, info):
        """Validate pool size."""
        min_size = info.data.get('min_pool_size', 1)
        if v < min_size:
            raise ValueError("max_pool_size cannot be smaller than min_pool_size")
        return v

    @field_validator('schema_name', 'table_name')
    @classmethod
    def validate_identifier(cls, v):
        if not v.replace("_", "").isalnum() or v[0].isdigit():
            raise ValueError(f"Invalid SQL identifier: {v}")
        return v

    @property
    def connection_dsn(self) -> str:
        """DSN passed to the connection pool."""
        if self.dsn:
            return self.dsn
        auth = self.user if self.password is None else f"{self.user}:{self.password}"
        return f"postgresql://{auth}@{self.host}:{self.port}/{self.database}"


class SecurityConfig(BaseModel):
    """Artifact signing settings."""

    provider: SecurityProviderType = Field(
        default=SecurityProviderType.NONE,
        description="Signing provider"
    )

    secret: Optional[str] = Field(default=None, description="Shared secret for HMAC signing")
    private_key_path: Optional[Path] = Field(default=None, description="Ed25519 private key (PEM)")
    public_key_path: Optional[Path] = Field(default=None, description="Ed25519 public key (PEM)")
    builder_id: str = Field(
        default="https://squizzle.dev/builder",
        description="Builder identity written into provenance records"
    )


class SquizzleConfig(BaseModel):
    """Top-level configuration."""

    storage_type: StorageType = Field(default=StorageType.FILESYSTEM, description="Artifact storage backend")
    engine: EngineConfig = Field(default_factory=EngineConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    filesystem: FilesystemStorageConfig = Field(default_factory=FilesystemStorageConfig)
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'SquizzleConfig':
        """
        Create configuration from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``

        Returns:
            SquizzleConfig instance with values from the environment

        Example:
            os.environ['SQUIZZLE_STORAGE'] = 'oci'
            os.environ['SQUIZZLE_REGISTRY'] = 'ghcr.io'

            config = SquizzleConfig.from_env()
        """
        env = os.environ if environ is None else environ

        engine = EngineConfig(
            lock_prefix=env.get('SQUIZZLE_LOCK_PREFIX', 'squizzle'),
            lock_timeout=float(env.get('SQUIZZLE_LOCK_TIMEOUT', '30')),
            default_max_parallel=int(env.get('SQUIZZLE_MAX_PARALLEL', '1')),
            stop_on_error=_env_bool(env.get('SQUIZZLE_STOP_ON_ERROR'), True),
        )

        registry_kwargs: Dict[str, object] = {
            'registry': env.get('SQUIZZLE_REGISTRY', 'localhost:5000'),
            'repository': env.get('SQUIZZLE_REPOSITORY', 'squizzle-artifacts'),
            'username': env.get('SQUIZZLE_REGISTRY_USERNAME'),
            'password': env.get('SQUIZZLE_REGISTRY_PASSWORD'),
            'insecure': _env_bool(env.get('SQUIZZLE_REGISTRY_INSECURE')),
            'timeout': float(env.get('SQUIZZLE_REGISTRY_TIMEOUT', '30')),
        }
        if env.get('SQUIZZLE_DOCKER_CONFIG'):
            registry_kwargs['docker_config_path'] = Path(env['SQUIZZLE_DOCKER_CONFIG'])

        postgres = PostgresConfig(
            dsn=env.get('SQUIZZLE_DATABASE_URL') or env.get('DATABASE_URL'),
            host=env.get('SQUIZZLE_DB_HOST', 'localhost'),
            port=int(env.get('SQUIZZLE_DB_PORT', '5432')),
            database=env.get('SQUIZZLE_DB_NAME', 'postgres'),
            user=env.get('SQUIZZLE_DB_USER', 'postgres'),
            password=env.get('SQUIZZLE_DB_PASSWORD'),
            applied_by=env.get('SQUIZZLE_APPLIED_BY'),
        )

        security = SecurityConfig(
            provider=SecurityProviderType(env.get('SQUIZZLE_SECURITY_PROVIDER', 'none')),
            secret=env.get('SQUIZZLE_SIGNING_SECRET'),
            private_key_path=env.get('SQUIZZLE_PRIVATE_KEY_PATH'),
            public_key_path=env.get('SQUIZZLE_PUBLIC_KEY_PATH'),
        )

        return cls(
            storage_type=StorageType(env.get('SQUIZZLE_STORAGE', 'filesystem')),
            engine=engine,
            registry=RegistryConfig(**registry_kwargs),
            filesystem=FilesystemStorageConfig(path=env.get('SQUIZZLE_ARTIFACT_PATH', './db/artifacts')),
            postgres=postgres,
            security=security,
        )
