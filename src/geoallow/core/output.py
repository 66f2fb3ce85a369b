"""Console output using Rich.

Provides:
- Leveled messages (info, success, warn, error, debug, verbose, step)
- Verbosity control and dry-run markers
- Component-prefixed output for pipeline steps
- Tables and summary panels for status and run reports

Warnings and errors go to stderr; everything else to stdout. Messages are
escaped, so registry data or command output never renders as markup.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from rich import box
from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors only
    NORMAL = 1   # Standard output
    VERBOSE = 2  # Additional details
    DEBUG = 3    # Everything


@dataclass(frozen=True)
class Level:
    """How one kind of message is rendered."""
    prefix: str
    min_verbosity: Verbosity
    stderr: bool = False
    style: str = ""


LEVELS = {
    "info": Level("[green]\\[INFO][/green] ", Verbosity.NORMAL),
    "success": Level("[green]\\[OK][/green] ", Verbosity.NORMAL),
    "step": Level("[blue]->[/blue] ", Verbosity.NORMAL),
    "warn": Level("[yellow]\\[WARN][/yellow] ", Verbosity.QUIET, stderr=True),
    "error": Level("[red]\\[ERROR][/red] ", Verbosity.QUIET, stderr=True),
    "verbose": Level("", Verbosity.VERBOSE, style="dim"),
    "debug": Level("[cyan]\\[DEBUG][/cyan] ", Verbosity.DEBUG),
    "hint": Level("[cyan]Hint:[/cyan] ", Verbosity.QUIET),
}


class Console:
    """Process-wide console.

    Configured once per ExecutionContext; services normally reach it
    through ctx.console, which may be a BoundConsole.
    """

    def __init__(self) -> None:
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self.no_color = False
        self._build(no_color=False)

    def _build(self, no_color: bool) -> None:
        self._out = RichConsole(highlight=False, no_color=no_color)
        self._err = RichConsole(stderr=True, highlight=False, no_color=no_color)

    def configure(
        self,
        verbosity: int = 1,
        dry_run: bool = False,
        no_color: bool = False,
    ) -> None:
        """Configure console output settings."""
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.dry_run = dry_run
        if no_color != self.no_color:
            self._build(no_color)
        self.no_color = no_color

    def emit(self, level: str, message: str) -> None:
        """Print a message at a named level, honoring verbosity."""
        lvl = LEVELS[level]
        if self.verbosity < lvl.min_verbosity:
            return
        text = escape(message)
        if lvl.style:
            text = f"[{lvl.style}]{text}[/{lvl.style}]"
        (self._err if lvl.stderr else self._out).print(lvl.prefix + text)

    def info(self, message: str) -> None:
        self.emit("info", message)

    def success(self, message: str) -> None:
        self.emit("success", message)

    def warn(self, message: str) -> None:
        self.emit("warn", message)

    def error(self, message: str) -> None:
        self.emit("error", message)

    def debug(self, message: str) -> None:
        self.emit("debug", message)

    def verbose(self, message: str) -> None:
        self.emit("verbose", message)

    def step(self, message: str) -> None:
        self.emit("step", message)

    def hint(self, message: str) -> None:
        self.emit("hint", message)

    def dry_run_msg(self, message: str) -> None:
        """Announce a skipped action; silent outside dry-run."""
        if self.dry_run:
            self._out.print(f"[blue]\\[DRY-RUN][/blue] Would: {escape(message)}")

    def print(self, message: Any = "", **kwargs: Any) -> None:
        """Print raw markup or a Rich renderable."""
        self._out.print(message, **kwargs)

    # Structured output

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.ROUNDED,
    ) -> None:
        table = Table(title=title, box=box_style)
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*(escape(str(cell)) for cell in row))
        self._out.print(table)

    def summary(self, title: str, items: dict[str, Any], border_style: str = "blue") -> None:
        """Print key-value pairs in a panel; booleans render as Yes/No."""
        lines = []
        for key, value in items.items():
            if isinstance(value, bool):
                rendered = "[green]Yes[/green]" if value else "[red]No[/red]"
            else:
                rendered = escape(str(value))
            lines.append(f"[bold]{escape(key)}:[/bold] {rendered}")
        self._out.print(Panel("\n".join(lines), title=title, border_style=border_style))

    def operation_summary(self, operation: str, success: bool, details: dict[str, Any]) -> None:
        """Print the outcome panel of a run."""
        status = "[green]SUCCESS[/green]" if success else "[red]FAILED[/red]"
        self.summary(
            f"{operation} - {status}",
            {key: str(value) for key, value in details.items()},
            border_style="green" if success else "red",
        )


class BoundConsole:
    """Console view that prefixes every message with the emitting component.

    Created by ExecutionContext.for_component(); anything that is not a
    leveled message is delegated to the wrapped console unchanged.
    """

    def __init__(self, console: Console, component: str) -> None:
        self._target = console
        self.component = component

    def emit(self, level: str, message: str) -> None:
        self._target.emit(level, f"[{self.component}] {message}")

    def info(self, message: str) -> None:
        self.emit("info", message)

    def success(self, message: str) -> None:
        self.emit("success", message)

    def warn(self, message: str) -> None:
        self.emit("warn", message)

    def error(self, message: str) -> None:
        self.emit("error", message)

    def debug(self, message: str) -> None:
        self.emit("debug", message)

    def verbose(self, message: str) -> None:
        self.emit("verbose", message)

    def step(self, message: str) -> None:
        self.emit("step", message)

    def dry_run_msg(self, message: str) -> None:
        self._target.dry_run_msg(f"[{self.component}] {message}")

    def __getattr__(self, name: str) -> Any:
        return getattr(self._target, name)


# Global console instance
console = Console()
