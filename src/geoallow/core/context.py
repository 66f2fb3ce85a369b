"""Execution context for pipeline runs.

The ExecutionContext holds the flags and configuration that affect how
a run is executed. The orchestrator creates one per run and hands a
component-bound copy to every service it drives, so log output and audit
events carry the run id and the emitting component explicitly.
"""

import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Union

from geoallow.core.config import AppConfig, DEFAULT_CONFIG_PATH
from geoallow.core.output import BoundConsole, Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Execution context passed to all services.

    Attributes:
        dry_run: If True, show what would happen without executing
        verbosity: Output verbosity level (0-3)
        no_color: If True, disable colored output
        config_path: Path to configuration file
        run_id: Identifier shared by every component of one run
        component: Name of the component this context was bound to
    """

    # Runtime flags
    dry_run: bool = False
    verbosity: int = 1
    no_color: bool = False

    # Configuration
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    # Call context
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    component: Optional[str] = None

    # Internal state (initialized lazily)
    _config: Optional[AppConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        """Configure console after initialization."""
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def config(self) -> AppConfig:
        """Get application configuration (lazy loaded)."""
        if self._config is None:
            self._config = AppConfig(config_path=self.config_path)
        return self._config

    @property
    def console(self) -> Union[Console, BoundConsole]:
        """Get console for output, prefixed with the component if bound."""
        if self.component:
            return BoundConsole(self._console, self.component)
        return self._console

    def for_component(self, component: str) -> "ExecutionContext":
        """Create a copy of this context bound to a named component.

        The copy shares the config, console and run id.
        """
        if self._config is None:
            # Load once so every component sees the same config object
            _ = self.config
        return replace(self, component=component)


def create_context(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create an execution context from CLI options.

    Args:
        dry_run: Preview changes without executing
        verbose: Increase verbosity (can be repeated)
        quiet: Suppress non-essential output
        no_color: Disable colored output
        config: Path to configuration file

    Returns:
        Configured execution context
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    return ExecutionContext(
        dry_run=dry_run,
        verbosity=verbosity,
        no_color=no_color,
        config_path=config or DEFAULT_CONFIG_PATH,
    )
