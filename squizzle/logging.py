"""
Migration logging for the Squizzle SDK.

This module provides structured logging for engine operations with
correlation ID tracking. Every event is written through the standard
``logging`` module and handed to any registered event handlers.
"""

import json
import logging
import uuid
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class MigrationEventType(str, Enum):
    """Types of migration events."""
    OPERATION_STARTED = "operation_started"
    OPERATION_COMPLETED = "operation_completed"
    OPERATION_FAILED = "operation_failed"
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"
    ARTIFACT_PULLED = "artifact_pulled"
    ARTIFACT_PUSHED = "artifact_pushed"
    INTEGRITY_VERIFIED = "integrity_verified"
    SIGNATURE_VERIFIED = "signature_verified"
    PLAN = "plan"
    MIGRATION_STARTED = "migration_started"
    MIGRATION_COMPLETED = "migration_completed"
    MIGRATION_FAILED = "migration_failed"
    VERSION_RECORDED = "version_recorded"
    REGISTRY_REQUEST = "registry_request"
    ERROR = "error"


class LogLevel(str, Enum):
    """Log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class MigrationEvent:
    """Migration event for structured logging."""
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: MigrationEventType = MigrationEventType.OPERATION_STARTED
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = None
    component: Optional[str] = None
    version: Optional[str] = None
    operation: Optional[str] = None
    status: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        data['event_type'] = self.event_type.value
        return data

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


EventHandler = Callable[[MigrationEvent], None]

correlation_id_context: ContextVar[Optional[str]] = ContextVar('squizzle_correlation_id', default=None)


class MigrationLogger:
    """
    Structured logger for engine operations.

    Events carry the correlation ID of the surrounding engine call so that
    every line of one apply or rollback can be grouped together.
    """

    def __init__(self, name: str = "engine", level: LogLevel = LogLevel.INFO):
        """
        Initialize migration logger.

        Args:
            name: Component name, appended to the ``squizzle`` logger namespace
            level: Log level
        """
        self.name = name
        self.level = level
        self.logger = logging.getLogger(f"squizzle.{name}")
        self.logger.setLevel(getattr(logging, level.value))
        self._event_handlers: List[EventHandler] = []

    def _get_correlation_id(self) -> str:
        """Get or generate correlation ID."""
        correlation_id = correlation_id_context.get()
        if not correlation_id:
            correlation_id = str(uuid.uuid4())
            correlation_id_context.set(correlation_id)
        return correlation_id

    def _create_event(self, event_type: MigrationEventType, message: str, **kwargs) -> MigrationEvent:
        return MigrationEvent(
            event_type=event_type,
            correlation_id=self._get_correlation_id(),
            component=self.name,
            version=kwargs.get('version'),
            operation=kwargs.get('operation'),
            status=kwargs.get('status'),
            duration_ms=kwargs.get('duration_ms'),
            metadata={
                'message': message,
                **kwargs.get('metadata', {})
            }
        )

    def _log_event(self, event: MigrationEvent, level: LogLevel) -> None:
        self.logger.log(
            getattr(logging, level.value),
            f"[{event.correlation_id}] {event.metadata.get('message', '')}",
            extra={'migration_event': event.to_dict()}
        )

        for handler in self._event_handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(f"Event handler error: {e}")

    def debug(self, message: str, event_type: MigrationEventType = MigrationEventType.PLAN, **kwargs):
        """Log debug message."""
        self._log_event(self._create_event(event_type, message, **kwargs), LogLevel.DEBUG)

    def info(self, message: str, event_type: MigrationEventType = MigrationEventType.OPERATION_STARTED, **kwargs):
        """Log info message."""
        self._log_event(self._create_event(event_type, message, **kwargs), LogLevel.INFO)

    def warning(self, message: str, event_type: MigrationEventType = MigrationEventType.ERROR, **kwargs):
        """Log warning message."""
        self._log_event(self._create_event(event_type, message, **kwargs), LogLevel.WARNING)

    def error(self, message: str, event_type: MigrationEventType = MigrationEventType.ERROR, **kwargs):
        """Log error message."""
        self._log_event(self._create_event(event_type, message, **kwargs), LogLevel.ERROR)

    def log_operation_started(self, operation: str, version: str, **kwargs):
        """Log the start of an engine operation."""
        self.info(
            f"Starting {operation} of version {version}",
            event_type=MigrationEventType.OPERATION_STARTED,
            version=version,
            operation=operation,
            status="running",
            metadata=kwargs
        )

    def log_operation_completed(self, operation: str, version: str, duration_ms: float, **kwargs):
        """Log a successful engine operation."""
        self.info(
            f"Completed {operation} of version {version} ({duration_ms:.2f}ms)",
            event_type=MigrationEventType.OPERATION_COMPLETED,
            version=version,
            operation=operation,
            status="success",
            duration_ms=duration_ms,
            metadata=kwargs
        )

    def log_operation_failed(self, operation: str, version: str, error: BaseException, **kwargs):
        """Log a failed engine operation."""
        self.error(
            f"Failed {operation} of version {version}: {error}",
            event_type=MigrationEventType.OPERATION_FAILED,
            version=version,
            operation=operation,
            status="failure",
            metadata={
                'error': str(error),
                'error_type': type(error).__name__,
                'error_code': getattr(error, 'code', None),
                **kwargs
            }
        )

    def log_plan(self, version: str, paths: List[str], dry_run: bool = False):
        """Log the ordered execution plan for a version."""
        prefix = "Dry run plan" if dry_run else "Execution plan"
        self.info(
            f"{prefix} for {version}: {', '.join(paths) if paths else '(empty)'}",
            event_type=MigrationEventType.PLAN,
            version=version,
            operation="plan",
            metadata={'paths': list(paths), 'dry_run': dry_run}
        )

    def log_migration(self, version: str, path: str, status: str,
                      duration_ms: Optional[float] = None, error: Optional[str] = None):
        """Log a single migration file outcome."""
        if status == "running":
            self.debug(
                f"Executing {path}",
                event_type=MigrationEventType.MIGRATION_STARTED,
                version=version,
                operation=path,
                status=status
            )
        elif status == "success":
            self.info(
                f"Executed {path} ({duration_ms or 0:.2f}ms)",
                event_type=MigrationEventType.MIGRATION_COMPLETED,
                version=version,
                operation=path,
                status=status,
                duration_ms=duration_ms
            )
        else:
            self.error(
                f"Migration {path} failed: {error}",
                event_type=MigrationEventType.MIGRATION_FAILED,
                version=version,
                operation=path,
                status=status,
                duration_ms=duration_ms,
                metadata={'error': error}
            )

    def log_lock(self, key: str, acquired: bool):
        """Log lock acquisition or release."""
        self.debug(
            f"Lock {'acquired' if acquired else 'released'}: {key}",
            event_type=MigrationEventType.LOCK_ACQUIRED if acquired else MigrationEventType.LOCK_RELEASED,
            operation=key
        )

    def log_registry_request(self, method: str, url: str, status_code: Optional[int] = None,
                             duration_ms: Optional[float] = None):
        """Log a registry HTTP exchange."""
        ok = status_code is not None and 200 <= status_code < 400
        self.debug(
            f"{method} {url} -> {status_code}",
            event_type=MigrationEventType.REGISTRY_REQUEST,
            operation=f"{method} {url}",
            status="success" if ok else "failure",
            duration_ms=duration_ms,
            metadata={'method': method, 'url': url, 'status_code': status_code}
        )

    def add_event_handler(self, handler: EventHandler) -> None:
        """Add event handler."""
        self._event_handlers.append(handler)

    def remove_event_handler(self, handler: EventHandler) -> None:
        """Remove event handler."""
        if handler in self._event_handlers:
            self._event_handlers.remove(handler)


class CorrelationContext:
    """Context manager binding a correlation ID for the duration of a call."""

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self._token = None

    def __enter__(self):
        self._token = correlation_id_context.set(self.correlation_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        correlation_id_context.reset(self._token)


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID from context."""
    return correlation_id_context.get()


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID in context."""
    correlation_id_context.set(correlation_id)


_loggers: Dict[str, MigrationLogger] = {}


def get_migration_logger(name: str = "engine") -> MigrationLogger:
    """Get a shared migration logger for ``name``."""
    if name not in _loggers:
        _loggers[name] = MigrationLogger(name)
    return _loggers[name]
