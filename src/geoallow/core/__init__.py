"""Core framework components for geoallow."""

from geoallow.core.exceptions import (
    Severity,
    GeoAllowError,
    ConfigurationError,
    ValidationError,
    ExecutionError,
    PrerequisiteError,
    LockError,
    FetchError,
    TransientFetchError,
    RegressionError,
    FirewallError,
    StagingError,
    ApplyError,
    SnapshotError,
    RestoreError,
    EmptySnapshotError,
    ReplayError,
)

from geoallow.core.context import ExecutionContext, create_context
from geoallow.core.output import console, Console, Verbosity
from geoallow.core.config import AppConfig, GeoAllowConfig
from geoallow.core.audit import (
    AuditLogger,
    AuditEvent,
    AuditEventType,
    AuditResult,
)
from geoallow.core.executor import CommandExecutor, CommandResult
from geoallow.core.lock import exclusive_lock

__all__ = [
    # Exceptions
    "Severity",
    "GeoAllowError",
    "ConfigurationError",
    "ValidationError",
    "ExecutionError",
    "PrerequisiteError",
    "LockError",
    "FetchError",
    "TransientFetchError",
    "RegressionError",
    "FirewallError",
    "StagingError",
    "ApplyError",
    "SnapshotError",
    "RestoreError",
    "EmptySnapshotError",
    "ReplayError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "GeoAllowConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    # Executor
    "CommandExecutor",
    "CommandResult",
    # Lock
    "exclusive_lock",
]
