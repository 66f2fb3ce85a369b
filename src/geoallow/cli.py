"""Main CLI entry point using Typer.

Thin invoking layer over the Orchestrator: every command builds an
execution context from the global options, runs one operation and exits
with the run's exit status.
"""

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from geoallow import __version__
from geoallow.core.config import DEFAULT_CONFIG_PATH
from geoallow.core.context import ExecutionContext, create_context
from geoallow.core.exceptions import GeoAllowError
from geoallow.core.output import console as app_console
from geoallow.services.orchestrator import ExitStatus, Orchestrator, RunAction, RunResult


app = typer.Typer(
    name="geoallow",
    help="Country allow-list firewall.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Preview changes without executing. Shows what would happen.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]

CountriesArgument = Annotated[
    list[str],
    typer.Argument(help="Two-letter country codes, e.g. US DE."),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"geoallow version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Country allow-list firewall.

    Keeps ipset-matched iptables allow rules in sync with the RIPEstat
    country registry and rolls back to a known-good snapshot when an
    update fails.

    [bold]Exit statuses:[/bold]
        0 success, 1 failure, 20 partial,
        21 failed but recovered, 22 failed and not recovered

    [bold]Examples:[/bold]
        geoallow add US DE
        geoallow update --dry-run
        geoallow remove DE
        geoallow status
    """
    pass


def get_context(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create execution context from CLI options."""
    return create_context(
        dry_run=dry_run,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )


def build_orchestrator(ctx: ExecutionContext) -> Orchestrator:
    return Orchestrator.create(ctx)


def handle_error(error: GeoAllowError) -> None:
    """Handle a GeoAllowError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def report(ctx: ExecutionContext, result: RunResult) -> None:
    """Print the run summary and exit with the run's status."""
    details = {
        "Status": f"{result.exit_status.name} ({int(result.exit_status)})",
        "Applied": ", ".join(result.ledger.succeeded) or "-",
    }
    for code, reason in result.ledger.failed.items():
        details[f"Failed {code}"] = reason
    if result.message:
        details["Message"] = result.message

    ctx.console.operation_summary(
        result.action.value.capitalize(),
        result.exit_status in (ExitStatus.SUCCESS, ExitStatus.PARTIAL),
        details,
    )
    if result.error is not None and result.error.hint:
        ctx.console.hint(result.error.hint)

    raise typer.Exit(int(result.exit_status))


def _run(
    action: RunAction,
    countries: Optional[list[str]],
    *,
    dry_run: bool,
    verbose: int,
    quiet: bool,
    no_color: bool,
    config: Optional[Path],
) -> None:
    ctx = get_context(dry_run=dry_run, verbose=verbose, quiet=quiet,
                      no_color=no_color, config=config)
    try:
        result = build_orchestrator(ctx).run(action, countries)
    except GeoAllowError as e:
        handle_error(e)
    report(ctx, result)


# ============================================================================
# Pipeline commands
# ============================================================================

@app.command("add")
def add(
    countries: CountriesArgument,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Start allowing traffic from countries.

    Fetches each country's prefixes and installs its allow rule. Countries
    that fail are reported; the others are still applied.
    """
    _run(RunAction.ADD, countries, dry_run=dry_run, verbose=verbose,
         quiet=quiet, no_color=no_color, config=config)


@app.command("remove")
def remove(
    countries: CountriesArgument,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Stop allowing traffic from countries."""
    _run(RunAction.REMOVE, countries, dry_run=dry_run, verbose=verbose,
         quiet=quiet, no_color=no_color, config=config)


@app.command("update")
def update(
    countries: Annotated[
        Optional[list[str]],
        typer.Argument(help="Countries to refresh. Default: every managed country."),
    ] = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Refresh managed countries from the registry.

    Meant for the scheduler. Nothing is touched when the registry has no
    newer data.
    """
    _run(RunAction.UPDATE, countries or None, dry_run=dry_run, verbose=verbose,
         quiet=quiet, no_color=no_color, config=config)


# ============================================================================
# Recovery commands
# ============================================================================

@app.command("restore")
def restore(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Restore the known-good snapshot.

    Falls back to the pre-management baseline policy if the restore fails.
    """
    ctx = get_context(dry_run=dry_run, verbose=verbose, quiet=quiet,
                      no_color=no_color, config=config)
    try:
        status = build_orchestrator(ctx).restore()
    except GeoAllowError as e:
        handle_error(e)

    if status == ExitStatus.SUCCESS:
        ctx.console.success("Known-good snapshot restored")
    else:
        ctx.console.error("Restore failed; baseline policy applied")
        ctx.console.hint("Inspect the audit log before retrying")
    raise typer.Exit(int(status))


@app.command("snapshot")
def snapshot(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Record the current rules and sets as the known-good snapshot."""
    ctx = get_context(dry_run=dry_run, verbose=verbose, quiet=quiet,
                      no_color=no_color, config=config)
    try:
        path = build_orchestrator(ctx).snapshot()
    except GeoAllowError as e:
        handle_error(e)
    ctx.console.success(f"Snapshot written to {path}")


@app.command("status")
def status(
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Show managed countries and firewall state."""
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)
    try:
        state = build_orchestrator(ctx).status()
    except GeoAllowError as e:
        handle_error(e)

    rows = []
    for entry in state["countries"]:
        entries = entry.get("set_entries")
        rows.append([
            entry["country"],
            str(entry.get("stored", "-")),
            entry.get("source_timestamp", "-"),
            "-" if entries is None else str(entries),
            "yes" if entry["rule"] else "no",
        ])
    ctx.console.table(
        "Managed countries",
        ["Country", "Stored", "Registry time", "Set entries", "Rule"],
        rows,
    )

    baseline = state["baseline"]
    summary = {
        "INPUT policy": state["input_policy"],
        "FORWARD policy": state["forward_policy"],
        "Baseline": "/".join(baseline) if baseline else "not recorded",
        "Last run": state["last_run"] or "never",
        "Last status": state["last_status"] or "-",
        "Snapshot": state["snapshot"] or "none",
    }
    for unit, unit_state in state["scheduler"].items():
        summary[unit] = unit_state
    ctx.console.summary("geoallow", summary)


if __name__ == "__main__":
    app()
