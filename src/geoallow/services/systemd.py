"""Systemd scheduler-trigger control.

geoallow never installs or creates units. It only needs to switch off its
own timer and boot units during a minimal teardown, and to report their
state.
"""

from dataclasses import dataclass

from geoallow.core.context import ExecutionContext
from geoallow.core.executor import CommandExecutor
from geoallow.core.exceptions import ExecutionError, PrerequisiteError


@dataclass
class UnitStatus:
    """Status of a systemd unit."""
    name: str
    active: bool
    enabled: bool


class SystemdService:
    """Safe interface for querying and disabling systemd units.

    All operations respect dry-run mode and log appropriately.
    """

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        """Initialize systemd service manager.

        Args:
            ctx: Execution context
            executor: Command executor
        """
        self.ctx = ctx
        self.executor = executor

    def is_active(self, unit: str) -> bool:
        """Check if a unit is active."""
        result = self.executor.run(
            ["systemctl", "is-active", "--quiet", unit],
            check=False,
            mutating=False,
        )
        return result.success

    def is_enabled(self, unit: str) -> bool:
        """Check if a unit is enabled."""
        result = self.executor.run(
            ["systemctl", "is-enabled", "--quiet", unit],
            check=False,
            mutating=False,
        )
        return result.success

    def status(self, unit: str) -> UnitStatus:
        return UnitStatus(
            name=unit,
            active=self.is_active(unit),
            enabled=self.is_enabled(unit),
        )

    def disable(self, unit: str, *, now: bool = True) -> bool:
        """Disable a unit, stopping it too when now is set.

        Args:
            unit: Unit name
            now: Also stop the unit

        Returns:
            True if systemctl accepted the request
        """
        cmd = ["systemctl", "disable"]
        if now:
            cmd.append("--now")
        cmd.append(unit)

        try:
            result = self.executor.run(cmd, check=False)
        except (ExecutionError, PrerequisiteError) as e:
            self.ctx.console.warn(f"Could not disable {unit}: {e.message}")
            return False

        if not result.success:
            self.ctx.console.warn(
                f"Could not disable {unit}: {result.stderr.strip() or 'systemctl failed'}"
            )
            return False
        return True

    def disable_all(self, units: list[str]) -> dict[str, bool]:
        """Disable several units, continuing past failures."""
        results: dict[str, bool] = {}
        for unit in units:
            results[unit] = self.disable(unit)
        return results

    def describe(self, unit: str) -> str:
        """One-line state summary for status output."""
        status = self.status(unit)
        state = "active" if status.active else "inactive"
        enabled = "enabled" if status.enabled else "disabled"
        return f"{state}, {enabled}"
