"""Command execution with dry-run support.

Provides:
- Safe command execution with output capture
- Typed results instead of text scraping at call sites
- Stdin feeding for batch tools (ipset restore, iptables-restore)
- Bounded timeouts
"""

import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional

from geoallow.core.context import ExecutionContext
from geoallow.core.exceptions import ExecutionError, PrerequisiteError


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0

    @property
    def lines(self) -> list[str]:
        """Non-empty stdout lines."""
        return [line for line in self.stdout.splitlines() if line.strip()]


class CommandExecutor:
    """Safe command execution with dry-run support and output capture.

    Features:
    - Dry-run mode shows what would happen
    - Output capture for processing
    - Timeout support (defaults to the configured command timeout)
    - Stdin payloads that are summarized, not echoed, in logs
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        """Initialize executor with context.

        Args:
            ctx: Execution context with flags
        """
        self.ctx = ctx

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        input_text: Optional[str] = None,
        timeout: Optional[int] = None,
        mutating: bool = True,
    ) -> CommandResult:
        """Execute a command.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            input_text: Text fed to the command's stdin
            timeout: Command timeout in seconds
            mutating: False for read-only queries, which still run in dry-run

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If command fails (and check=True) or times out
            PrerequisiteError: If the program is not installed
        """
        if description:
            self.ctx.console.step(description)

        cmd_display = shlex.join(command)
        if input_text is not None:
            cmd_display += f" <<< ({len(input_text.splitlines())} lines)"
        self.ctx.console.debug(f"Running: {cmd_display}")

        if self.ctx.dry_run and mutating:
            self.ctx.console.dry_run_msg(f"Run: {cmd_display}")
            return CommandResult(
                command=command,
                return_code=0,
                stdout="",
                stderr="",
            )

        if timeout is None:
            timeout = self.ctx.config.config.command_timeout

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                input=input_text,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or cmd_display}",
                command=cmd_display,
            )
        except FileNotFoundError:
            raise PrerequisiteError(
                f"Required command not found: {command[0]}",
                hint=f"Install the package providing '{command[0]}'",
            )

        cmd_result = CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=result.stderr,
            )

        return cmd_result
