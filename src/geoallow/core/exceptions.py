"""Custom exceptions for geoallow.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
- A severity that tells the orchestrator whether a run continues,
  aborts and recovers, or needs operator attention
"""

from enum import Enum
from typing import Optional


class Severity(str, Enum):
    """How far a failure reaches."""
    TRANSIENT = "transient"                      # One item, run continues
    PERMANENT_ITEM = "permanent_item"            # One item, possible data corruption
    PERMANENT_PIPELINE = "permanent_pipeline"    # Whole apply aborted, restore needed
    FATAL_UNRECOVERABLE = "fatal_unrecoverable"  # Restore failed, operator needed


class GeoAllowError(Exception):
    """Base exception for all geoallow errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
        severity: Failure classification
    """

    exit_code: int = 1
    severity: Severity = Severity.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(GeoAllowError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML syntax
    - Invalid configuration values
    """
    exit_code = 2


class ValidationError(GeoAllowError):
    """Input validation errors.

    Raised when:
    - Invalid country code
    - Invalid CIDR notation
    - Corrupt stored prefix list
    """
    exit_code = 3


class ExecutionError(GeoAllowError):
    """Command execution failures.

    Raised when:
    - Shell command returns non-zero exit code
    - Shell command times out
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class PrerequisiteError(GeoAllowError):
    """Missing prerequisites.

    Raised when:
    - Required command not found
    - Insufficient permissions
    """
    exit_code = 6


class LockError(GeoAllowError):
    """Another geoallow instance holds the run lock."""
    exit_code = 7


# Pipeline exceptions

class FetchError(GeoAllowError):
    """Fetching a country's prefix list failed.

    Attributes:
        country_code: Country the fetch was for
    """
    exit_code = 10

    def __init__(
        self,
        message: str,
        *,
        country_code: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.country_code = country_code


class TransientFetchError(FetchError):
    """Network error, registry non-ok status, malformed or too-small reply."""
    severity = Severity.TRANSIENT


class RegressionError(FetchError):
    """Prefix count dropped sharply against the stored list.

    Probable data corruption or a partial registry outage; the stored list
    is kept as is.
    """
    severity = Severity.PERMANENT_ITEM


class FirewallError(GeoAllowError):
    """Firewall (iptables/ipset) errors.

    Raised when:
    - iptables or ipset command fails
    - Rule or set state is not what was expected
    """
    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        country_code: Optional[str] = None,
        chain: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.country_code = country_code
        self.chain = chain


class StagingError(FirewallError):
    """Staging set creation or load failed for one country.

    No rule has been touched yet, so only that country is affected.
    """
    severity = Severity.TRANSIENT


class ApplyError(FirewallError):
    """Failure after the fail-open window opened.

    The rule chain may be partially modified, so the whole apply is
    aborted and the known-good snapshot must be restored.
    """
    severity = Severity.PERMANENT_PIPELINE


class SnapshotError(GeoAllowError):
    """Writing the known-good snapshot failed."""
    exit_code = 16


class RestoreError(GeoAllowError):
    """Restoring the known-good snapshot failed.

    Attributes:
        part: Which half failed ("rules" or "sets"), if known
    """
    exit_code = 17
    severity = Severity.FATAL_UNRECOVERABLE

    def __init__(
        self,
        message: str,
        *,
        part: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.part = part


class EmptySnapshotError(RestoreError):
    """Snapshot missing, or a section has nothing to replay."""


class ReplayError(RestoreError):
    """Replaying a snapshot section was rejected by the firewall tool."""
