"""Rule applier.

Installs validated prefix lists as ipset-matched iptables ACCEPT rules:

1. Stage every country into its own staging set (item failures only)
2. Open the fail-open window (INPUT/FORWARD policy ACCEPT)
3. Tear down the touched countries' rules and the global rules
4. Reinstall the global allow rules (loopback, established, local subnet)
5. Commit: swap staging into permanent sets (Add) or destroy them (Remove)
6. Re-lock (INPUT/FORWARD policy DROP)

Everything from step 2 on runs inside a PolicyWindow, whose exit handler
re-locks on every exit path. Any failure inside the window is an
ApplyError: the chain may be half-modified, so the caller must restore
the known-good snapshot.
"""

import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional, Union

from geoallow.core.context import ExecutionContext
from geoallow.core.exceptions import (
    ApplyError,
    FirewallError,
    GeoAllowError,
    StagingError,
)
from geoallow.core.output import BoundConsole, Console
from geoallow.services import sizing
from geoallow.services.ipset import IpsetService, permanent_set_name, staging_set_name
from geoallow.services.iptables import (
    GLOBAL_TAG,
    MANAGED_CHAINS,
    Chain,
    IptablesService,
    Policy,
    country_tag,
)
from geoallow.services.network import detect_local_subnet
from geoallow.services.prefix_source import PrefixList


class ApplyAction(str, Enum):
    """What an apply does to the touched countries."""
    ADD = "add"
    REMOVE = "remove"


@dataclass
class ApplyReport:
    """Outcome of one apply.

    Attributes:
        applied: Countries committed, in order
        failed: Countries that failed staging, with the reason
        window_opened: Whether the fail-open window was entered
    """
    applied: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    window_opened: bool = False


class WindowState(str, Enum):
    CLOSED = "closed"          # Not entered yet, or exited
    OPEN = "open"              # Policy forced to ACCEPT, chain being torn down
    GUARDED = "guarded"        # Global allow rules installed
    COMMITTED = "committed"    # All country rules committed


class PolicyWindow:
    """The fail-open window as an explicit state machine.

    Entering forces the managed chains to ACCEPT. Exiting re-locks them to
    DROP when relock is set, on the normal path and on every error path.
    Steps advance the state with guard() and commit(); an out-of-order
    transition is an ApplyError.

    Usage:
        with PolicyWindow(iptables, console) as window:
            ...  # teardown, global rules
            window.guard()
            ...  # commit countries
            window.commit()
    """

    def __init__(
        self,
        iptables: IptablesService,
        console: Union[Console, BoundConsole],
        *,
        relock: bool = True,
    ) -> None:
        self.iptables = iptables
        self.console = console
        self.relock = relock
        self.state = WindowState.CLOSED

    def __enter__(self) -> "PolicyWindow":
        if self.state != WindowState.CLOSED:
            raise ApplyError(f"Policy window cannot open from state {self.state.value}")

        self.console.step("Opening fail-open window")
        self.state = WindowState.OPEN
        try:
            for chain in MANAGED_CHAINS:
                self.iptables.set_policy(chain, Policy.ACCEPT)
        except FirewallError:
            # __exit__ does not run when __enter__ raises
            self.__exit__(*sys.exc_info())
            raise
        return self

    def guard(self) -> None:
        self._advance(WindowState.OPEN, WindowState.GUARDED)

    def commit(self) -> None:
        self._advance(WindowState.GUARDED, WindowState.COMMITTED)

    def _advance(self, expected: WindowState, new: WindowState) -> None:
        if self.state != expected:
            raise ApplyError(
                f"Policy window cannot move to {new.value} from {self.state.value}"
            )
        self.state = new

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if self.relock:
                self._lock(raise_errors=exc_type is None)
            else:
                self.console.warn("Re-lock suppressed; INPUT and FORWARD stay ACCEPT")
        finally:
            self.state = WindowState.CLOSED
        return False

    def _lock(self, *, raise_errors: bool) -> None:
        self.console.step("Re-locking (policy DROP)")
        for chain in MANAGED_CHAINS:
            try:
                self.iptables.set_policy(chain, Policy.DROP)
            except FirewallError as e:
                if raise_errors:
                    raise
                # An error is already propagating; recovery sets the final policy
                self.console.warn(f"Re-lock of {chain.value} failed: {e.message}")


class RuleApplier:
    """Applies country prefix lists to the packet filter.

    Owns the rule chain and the address sets during an apply.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        iptables: IptablesService,
        ipset: IpsetService,
        subnet_provider: Callable[[], Optional[str]] = detect_local_subnet,
    ) -> None:
        """Initialize rule applier.

        Args:
            ctx: Execution context
            iptables: iptables service
            ipset: ipset service
            subnet_provider: Detects the local subnet when none is configured
        """
        self.ctx = ctx
        self.iptables = iptables
        self.ipset = ipset
        self.subnet_provider = subnet_provider

    def apply(
        self,
        action: ApplyAction,
        lists: Mapping[str, Optional[PrefixList]],
        *,
        relock: bool = True,
    ) -> ApplyReport:
        """Apply an action to a set of countries.

        Args:
            action: ADD (install/refresh) or REMOVE
            lists: Country code -> prefix list (ADD) or None (REMOVE)
            relock: Set INPUT/FORWARD back to DROP at the end

        Returns:
            ApplyReport with committed countries and staging failures

        Raises:
            ApplyError: Any failure after the fail-open window opened
        """
        report = ApplyReport()
        codes = [code.upper() for code in lists]
        if not codes:
            return report

        if action == ApplyAction.ADD:
            staged = self._stage_all(lists, report)
        else:
            staged = codes
        if not staged:
            self.ctx.console.warn("Nothing staged; firewall left untouched")
            return report

        # Staging sets still to be destroyed
        pending = set(staged) if action == ApplyAction.ADD else set()

        try:
            with PolicyWindow(self.iptables, self.ctx.console, relock=relock) as window:
                report.window_opened = True
                self._teardown(staged)
                self._install_global_rules()
                window.guard()

                for code in staged:
                    if action == ApplyAction.ADD:
                        self._commit_add(code, lists[code])
                        pending.discard(code)
                    else:
                        self._commit_remove(code)
                    report.applied.append(code)

                window.commit()
        except ApplyError:
            raise
        except GeoAllowError as e:
            raise ApplyError(
                f"Apply aborted: {e.message}",
                chain=getattr(e, "chain", None),
                country_code=getattr(e, "country_code", None),
                hint="The known-good snapshot must be restored",
                details=e.details,
            ) from e
        finally:
            self._cleanup_staging(pending)

        self.ctx.console.success(
            f"{action.value.capitalize()} applied for {', '.join(report.applied)}"
        )
        return report

    # =========================================================================
    # Steps
    # =========================================================================

    def _stage_all(
        self,
        lists: Mapping[str, Optional[PrefixList]],
        report: ApplyReport,
    ) -> list[str]:
        staged = []
        for code, prefix_list in lists.items():
            code = code.upper()
            try:
                self._stage(code, prefix_list)
            except StagingError as e:
                self.ctx.console.warn(f"{code}: {e.message}")
                report.failed[code] = e.message
                continue
            staged.append(code)
        return staged

    def _stage(self, code: str, prefix_list: Optional[PrefixList]) -> None:
        """Create and fill a country's staging set; no rule is touched."""
        if prefix_list is None or not prefix_list.prefixes:
            raise StagingError("No prefix list to stage", country_code=code)

        name = staging_set_name(code)
        set_size = sizing.size(prefix_list.count)
        self.ctx.console.verbose(
            f"Staging {code}: {prefix_list.count} prefixes "
            f"(hashsize {set_size.hash_size}, maxelem {set_size.max_elements})"
        )
        try:
            self.ipset.destroy(name)
            self.ipset.create(name, set_size)
            self.ipset.load(name, prefix_list.prefixes)
        except FirewallError as e:
            try:
                self.ipset.destroy(name)
            except FirewallError:
                self.ctx.console.debug(f"Could not clean up staging set {name}")
            raise StagingError(
                f"Staging failed: {e.message}",
                country_code=code,
                details=e.details,
            ) from e

    def _teardown(self, codes: list[str]) -> None:
        tags = {country_tag(code) for code in codes}
        tags.add(GLOBAL_TAG)
        deleted = self.iptables.delete_tagged_rules(Chain.INPUT, tags)
        self.ctx.console.verbose(f"Removed {deleted} tagged rules from INPUT")

    def _install_global_rules(self) -> None:
        subnet = self.ctx.config.config.local_subnet or self.subnet_provider()
        if not subnet:
            raise ApplyError(
                "Could not detect the local subnet",
                chain=Chain.INPUT.value,
                hint="Set local_subnet in /etc/geoallow/config.yaml",
            )

        self.iptables.append_rule(Chain.INPUT, ["-i", "lo"], GLOBAL_TAG)
        self.iptables.append_rule(
            Chain.INPUT,
            ["-m", "conntrack", "--ctstate", "ESTABLISHED,RELATED"],
            GLOBAL_TAG,
        )
        self.iptables.append_rule(Chain.INPUT, ["-s", subnet], GLOBAL_TAG)

    def _commit_add(self, code: str, prefix_list: PrefixList) -> None:
        permanent = permanent_set_name(code)
        staging = staging_set_name(code)

        if not self.ipset.exists(permanent):
            self.ipset.create(permanent, sizing.size(prefix_list.count))
        self.iptables.append_rule(
            Chain.INPUT,
            ["-m", "set", "--match-set", permanent, "src"],
            country_tag(code),
        )
        self.ipset.swap(staging, permanent)
        self.ipset.destroy(staging)

    def _commit_remove(self, code: str) -> None:
        self.ipset.destroy(permanent_set_name(code))

    def _cleanup_staging(self, codes: set[str]) -> None:
        for code in sorted(codes):
            try:
                self.ipset.destroy(staging_set_name(code))
            except GeoAllowError as e:
                self.ctx.console.warn(f"Leftover staging set for {code}: {e.message}")
