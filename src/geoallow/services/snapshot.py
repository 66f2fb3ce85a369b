"""Known-good snapshot and recovery.

One snapshot file per host, replaced atomically after every successful
apply. It holds two sections:

    # geoallow snapshot <time> run <run id>
    [rules]
    *filter
    :INPUT DROP [0:0]
    ...
    -A INPUT ... -m comment --comment geoallow_global -j ACCEPT
    COMMIT
    [sets]
    create geoallow_us hash:net family inet hashsize 512 maxelem 512
    add geoallow_us 3.0.0.0/9

The rules section is iptables-restore input (built-in chain policies plus
every rule carrying a geoallow comment), the sets section is ipset restore
input (every geoallow set except staging sets). Restore replays both
byte for byte without re-validating them.
"""

import shlex
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from geoallow.core.context import ExecutionContext
from geoallow.core.exceptions import (
    EmptySnapshotError,
    FirewallError,
    GeoAllowError,
    ReplayError,
    RestoreError,
    SnapshotError,
)
from geoallow.core.files import write_text_atomic
from geoallow.services.ipset import IpsetService, count_restorable_lines, is_staging_set
from geoallow.services.iptables import (
    MANAGED_CHAINS,
    Chain,
    IptablesService,
    Policy,
    is_suite_comment,
    rule_comment,
)
from geoallow.services.systemd import SystemdService


RULES_SECTION = "rules"
SETS_SECTION = "sets"
SNAPSHOT_PERMS = 0o600


def build_rules_section(save_output: str) -> str:
    """Reduce iptables-save output to policies plus geoallow-tagged rules."""
    builtin = {chain.value for chain in Chain}
    policies = []
    rules = []
    for line in save_output.splitlines():
        if line.startswith(":"):
            parts = line[1:].split()
            if len(parts) >= 2 and parts[0] in builtin:
                policies.append(f":{parts[0]} {parts[1]} [0:0]")
        elif line.startswith("-A "):
            if is_suite_comment(rule_comment(shlex.split(line))):
                rules.append(line)
    return "\n".join(["*filter", *policies, *rules, "COMMIT"]) + "\n"


def count_rule_lines(section: str) -> int:
    """Count the policy and rule lines iptables-restore would apply."""
    return sum(
        1 for line in section.splitlines()
        if line.startswith(":") or line.startswith("-A ")
    )


def parse_snapshot(content: str) -> dict[str, str]:
    """Split a snapshot file into its sections."""
    sections: dict[str, list[str]] = {}
    current: Optional[str] = None
    for line in content.splitlines():
        if line in (f"[{RULES_SECTION}]", f"[{SETS_SECTION}]"):
            current = line[1:-1]
            sections[current] = []
        elif current is not None:
            sections[current].append(line)
    return {
        name: "\n".join(lines) + "\n" if lines else ""
        for name, lines in sections.items()
    }


class SnapshotStore:
    """Writes and replays the known-good snapshot.

    Exclusively owns the snapshot file. The caller holds the run lock.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        iptables: IptablesService,
        ipset: IpsetService,
        systemd: SystemdService,
        path: Optional[Path] = None,
    ) -> None:
        """Initialize snapshot store.

        Args:
            ctx: Execution context
            iptables: iptables service
            ipset: ipset service
            systemd: systemd service (scheduler triggers for teardown)
            path: Snapshot file (defaults to the configured snapshot path)
        """
        self.ctx = ctx
        self.iptables = iptables
        self.ipset = ipset
        self.systemd = systemd
        self.path = path or ctx.config.snapshot_path

    # =========================================================================
    # Snapshot
    # =========================================================================

    def snapshot(self) -> Path:
        """Dump the current rules and sets over the previous snapshot.

        Raises:
            SnapshotError: If dumping or writing fails; the previous
                snapshot is left intact
        """
        try:
            rules = build_rules_section(self.iptables.save())
            names = [name for name in self.ipset.list_names() if not is_staging_set(name)]
            sets = self.ipset.save(names)
        except GeoAllowError as e:
            raise SnapshotError(
                f"Could not dump firewall state: {e.message}",
                details=e.details,
            ) from e

        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        content = (
            f"# geoallow snapshot {stamp} run {self.ctx.run_id}\n"
            f"[{RULES_SECTION}]\n{rules}"
            f"[{SETS_SECTION}]\n{sets}"
        )

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Would write snapshot to {self.path}")
            return self.path

        try:
            write_text_atomic(self.path, content, permissions=SNAPSHOT_PERMS)
        except OSError as e:
            raise SnapshotError(
                f"Could not write snapshot: {self.path}",
                details=[str(e)],
            ) from e

        self.ctx.console.verbose(
            f"Snapshot written: {count_rule_lines(rules)} rule lines, "
            f"{len(names)} sets"
        )
        return self.path

    def exists(self) -> bool:
        return self.path.exists()

    # =========================================================================
    # Restore
    # =========================================================================

    def restore(self) -> None:
        """Bring the firewall back to the snapshot state.

        Opens INPUT/FORWARD, removes every geoallow rule and set, then
        replays the sets section and the rules section. Sets go first:
        iptables refuses a --match-set rule whose set does not exist. The
        rules section carries the recorded policies, so the host ends in
        the snapshot's deny posture.

        Raises:
            RestoreError: If the snapshot is missing or empty, or a replay
                or cleanup command fails
        """
        sections = self._read_sections()
        counts = {
            RULES_SECTION: count_rule_lines(sections.get(RULES_SECTION, "")),
            SETS_SECTION: count_restorable_lines(sections.get(SETS_SECTION, "")),
        }
        # Check before clearing anything
        for part, count in counts.items():
            if count == 0:
                raise EmptySnapshotError(
                    f"Snapshot has no {part} to restore",
                    part=part,
                    hint="Nothing to roll back to; the host needs operator attention",
                )

        self.ctx.console.step("Restoring known-good snapshot")
        try:
            for chain in MANAGED_CHAINS:
                self.iptables.set_policy(chain, Policy.ACCEPT)
            for chain in MANAGED_CHAINS:
                self.iptables.delete_tagged_rules(chain)
            for name in self.ipset.list_names():
                self.ipset.destroy(name, missing_ok=False)
        except GeoAllowError as e:
            raise RestoreError(
                f"Could not clear current state before restore: {e.message}",
                details=e.details,
            ) from e

        sets = self.restore_sets(sections)
        rules = self.restore_rules(sections)
        self.ctx.console.success(f"Snapshot restored ({rules} rule lines, {sets} set lines)")

    def restore_rules(self, sections: Optional[dict[str, str]] = None) -> int:
        """Replay the rules section.

        Returns:
            Number of policy and rule lines replayed

        Raises:
            EmptySnapshotError: Nothing to replay
            ReplayError: iptables-restore rejected the section
        """
        section = (sections or self._read_sections()).get(RULES_SECTION, "")
        count = count_rule_lines(section)
        if count == 0:
            raise EmptySnapshotError("Snapshot rules section is empty", part=RULES_SECTION)

        try:
            self.iptables.restore(section)
        except GeoAllowError as e:
            raise ReplayError(
                f"Replaying snapshot rules failed: {e.message}",
                part=RULES_SECTION,
                details=e.details,
            ) from e
        return count

    def restore_sets(self, sections: Optional[dict[str, str]] = None) -> int:
        """Replay the sets section.

        Returns:
            Number of create/add lines replayed

        Raises:
            EmptySnapshotError: Nothing to replay
            ReplayError: ipset restore rejected the section
        """
        section = (sections or self._read_sections()).get(SETS_SECTION, "")
        if count_restorable_lines(section) == 0:
            raise EmptySnapshotError("Snapshot sets section is empty", part=SETS_SECTION)

        try:
            return self.ipset.restore(section)
        except GeoAllowError as e:
            raise ReplayError(
                f"Replaying snapshot sets failed: {e.message}",
                part=SETS_SECTION,
                details=e.details,
            ) from e

    def _read_sections(self) -> dict[str, str]:
        if not self.path.exists():
            raise EmptySnapshotError(
                f"No snapshot at {self.path}",
                hint="A snapshot is written after the first successful apply",
            )
        try:
            return parse_snapshot(self.path.read_text())
        except OSError as e:
            raise RestoreError(
                f"Cannot read snapshot: {self.path}",
                details=[str(e)],
            ) from e

    # =========================================================================
    # Minimal teardown
    # =========================================================================

    def minimal_teardown(
        self,
        baseline: Optional[tuple[str, str]],
        scheduler_units: Optional[list[str]] = None,
    ) -> bool:
        """Fall back to the pre-management policies and stop scheduled runs.

        Never deletes rules, sets, stored lists or installed files, so the
        operator can still diagnose the host.

        Args:
            baseline: Recorded (INPUT, FORWARD) policies; ACCEPT when None
            scheduler_units: Units to disable (defaults to configuration)

        Returns:
            True if every step succeeded
        """
        self.ctx.console.error("Restore failed; applying minimal teardown")
        input_policy, forward_policy = baseline or (Policy.ACCEPT.value, Policy.ACCEPT.value)
        ok = True

        for chain, value in ((Chain.INPUT, input_policy), (Chain.FORWARD, forward_policy)):
            try:
                policy = Policy(value)
            except ValueError:
                self.ctx.console.warn(f"Unknown baseline policy {value!r}; using ACCEPT")
                policy = Policy.ACCEPT
            try:
                self.iptables.set_policy(chain, policy)
            except FirewallError as e:
                self.ctx.console.error(f"Could not set {chain.value} to {policy.value}: {e.message}")
                ok = False

        units = scheduler_units
        if units is None:
            units = self.ctx.config.config.scheduler_units
        results = self.systemd.disable_all(units)
        return ok and all(results.values())
