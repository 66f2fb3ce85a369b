"""Audit logging for all pipeline operations.

This is the durable system log: fatal and pipeline-level errors are
recorded here as well as printed, because the host may be unreachable
afterwards if recovery also fails.

Provides:
- JSON-formatted audit logs, one event per line
- Run and component tracking
- Automatic log rotation
"""

import fcntl
import json
import os
import pwd
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Optional

from geoallow.core.config import DEFAULT_LOG_PATH
from geoallow.core.output import console


DEFAULT_MAX_SIZE_MB = 20
DEFAULT_BACKUP_COUNT = 5


class AuditEventType(Enum):
    """Types of auditable events."""
    RUN_START = "run.start"
    RUN_END = "run.end"

    FETCH_UPDATED = "fetch.updated"
    FETCH_NOT_MODIFIED = "fetch.not_modified"
    FETCH_FAILED = "fetch.failed"

    APPLY_STAGE_FAILED = "apply.stage_failed"
    APPLY_COMMITTED = "apply.committed"
    APPLY_FAILED = "apply.failed"

    SNAPSHOT_WRITE = "snapshot.write"
    SNAPSHOT_RESTORE = "snapshot.restore"

    TEARDOWN = "teardown.minimal"
    REGISTRY_UPDATE = "registry.update"
    LOCK_BLOCKED = "lock.blocked"


class AuditResult(Enum):
    """Result of an audited operation."""
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"
    DRY_RUN = "dry_run"
    PARTIAL = "partial"


def _current_username() -> str:
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return str(os.getuid())


@dataclass
class AuditEvent:
    """Represents a single audit event."""
    event_type: AuditEventType
    result: AuditResult
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Actor information
    actor_uid: int = field(default_factory=os.getuid)
    actor_username: str = field(default_factory=_current_username)

    # Target information
    target_type: Optional[str] = None
    target_name: Optional[str] = None

    # Details
    parameters: dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    error: Optional[str] = None
    severity: Optional[str] = None

    # Call context
    run_id: Optional[str] = None
    component: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type.value,
            "result": self.result.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": {
                "uid": self.actor_uid,
                "username": self.actor_username,
            },
            "target": {
                "type": self.target_type,
                "name": self.target_name,
            },
            "parameters": self.parameters,
            "message": self.message,
            "error": self.error,
            "severity": self.severity,
            "run_id": self.run_id,
            "component": self.component,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """Audit logger for tracking all operations.

    Features:
    - Append-only JSON log file
    - Atomic appends with file locking
    - Automatic log rotation
    - Logging failures never interrupt the pipeline
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        """Initialize audit logger.

        Args:
            log_path: Path to audit log file
            max_size_mb: Maximum log file size before rotation
            backup_count: Number of backup files to keep
            enabled: Whether logging is enabled
        """
        self.log_path = log_path or DEFAULT_LOG_PATH
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled

    def _ensure_log_directory(self) -> bool:
        """Create log directory with restrictive permissions."""
        try:
            self.log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            if not self.log_path.exists():
                self.log_path.touch(mode=0o640)
            return True
        except OSError as e:
            console.debug(f"Cannot create audit log directory: {e}")
            return False

    def log(self, event: AuditEvent) -> None:
        """Log an audit event."""
        if not self.enabled:
            return

        log_line = event.to_json() + "\n"

        if not self._ensure_log_directory():
            return

        try:
            with self._atomic_append() as f:
                f.write(log_line)
        except OSError as e:
            console.debug(f"Failed to write audit log: {e}")
            return

        self._rotate_if_needed()

    @contextmanager
    def _atomic_append(self) -> Generator:
        """Context manager for atomic append with file locking."""
        fd = os.open(
            self.log_path,
            os.O_WRONLY | os.O_APPEND | os.O_CREAT,
            0o640,
        )
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            with os.fdopen(fd, "a") as f:
                yield f
                f.flush()
                os.fsync(fd)
        except Exception:
            try:
                os.close(fd)
            except OSError:
                pass
            raise

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        try:
            if self.log_path.stat().st_size > self.max_size_bytes:
                self._rotate_logs()
        except OSError as e:
            console.debug(f"Audit log rotation failed: {e}")

    def _rotate_logs(self) -> None:
        """Rotate log files (audit.log -> audit.log.1 -> ...)."""
        oldest = self.log_path.with_name(f"{self.log_path.name}.{self.backup_count}")
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = self.log_path.with_name(f"{self.log_path.name}.{i}")
            dst = self.log_path.with_name(f"{self.log_path.name}.{i + 1}")
            if src.exists():
                src.rename(dst)

        self.log_path.rename(self.log_path.with_name(f"{self.log_path.name}.1"))
        self.log_path.touch(mode=0o640)

    # Convenience methods
    def record(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        *,
        ctx: Any = None,
        target_type: Optional[str] = None,
        target_name: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """Log an event, taking run id and component from an ExecutionContext."""
        if ctx is not None and getattr(ctx, "dry_run", False) and result is AuditResult.SUCCESS:
            result = AuditResult.DRY_RUN

        severity = getattr(error, "severity", None)
        self.log(AuditEvent(
            event_type=event_type,
            result=result,
            target_type=target_type,
            target_name=target_name,
            parameters=parameters or {},
            message=message,
            error=str(error) if error is not None else None,
            severity=severity.value if severity is not None else None,
            run_id=getattr(ctx, "run_id", None),
            component=getattr(ctx, "component", None),
        ))

