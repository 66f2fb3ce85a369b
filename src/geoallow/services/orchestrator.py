"""Pipeline orchestrator.

Drives one run: lock -> fetch -> apply -> snapshot, or on an apply
failure lock -> ... -> restore -> (minimal teardown). Maps the outcome
onto an exit status and commits the run's ledger to the country registry.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import requests

from geoallow.core.audit import AuditEventType, AuditLogger, AuditResult
from geoallow.core.context import ExecutionContext
from geoallow.core.exceptions import (
    ApplyError,
    FirewallError,
    GeoAllowError,
    LockError,
    SnapshotError,
    ValidationError,
)
from geoallow.core.executor import CommandExecutor
from geoallow.core.lock import exclusive_lock
from geoallow.services.ipset import IpsetService, permanent_set_name
from geoallow.services.iptables import Chain, IptablesService, country_tag
from geoallow.services.network import detect_local_subnet
from geoallow.services.prefix_source import FetchStatus, PrefixList, PrefixSource
from geoallow.services.registry import CountryRegistry, RunLedger
from geoallow.services.rule_applier import ApplyAction, RuleApplier
from geoallow.services.snapshot import SnapshotStore
from geoallow.services.systemd import SystemdService


class ExitStatus(IntEnum):
    """Process exit statuses of a run."""
    SUCCESS = 0
    FAILURE = 1
    PARTIAL = 20
    FATAL_RECOVERED = 21
    FATAL_UNRECOVERED = 22


class RunAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    UPDATE = "update"


@dataclass
class RunResult:
    """Outcome of one run."""
    action: RunAction
    exit_status: ExitStatus
    ledger: RunLedger = field(default_factory=RunLedger)
    message: str = ""
    error: Optional[GeoAllowError] = None

    @property
    def changed_registry(self) -> bool:
        return self.exit_status in (ExitStatus.SUCCESS, ExitStatus.PARTIAL)


def commit_ledger(registry: CountryRegistry, action: RunAction, result: RunResult) -> None:
    """Fold a finished run into the registry and save it.

    Add adds the succeeded countries and Remove drops them. Update leaves
    the country set as is. Only SUCCESS and PARTIAL runs change the set;
    every run records last_run and last_status.
    """
    if result.changed_registry:
        countries = set(registry.countries)
        if action == RunAction.ADD:
            countries.update(result.ledger.succeeded)
        elif action == RunAction.REMOVE:
            countries.difference_update(result.ledger.succeeded)
        registry.set_countries(countries)

    registry.record_run(result.exit_status.name.lower())
    registry.save()


def _dedupe_codes(codes: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for code in codes:
        code = (code or "").strip().upper()
        if code:
            seen.setdefault(code, None)
    return list(seen)


class Orchestrator:
    """Runs the update-and-recovery pipeline.

    Every run holds the exclusive run lock from start to finish.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        source: PrefixSource,
        applier: RuleApplier,
        snapshots: SnapshotStore,
        registry: CountryRegistry,
        iptables: IptablesService,
        ipset: IpsetService,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.ctx = ctx
        self.source = source
        self.applier = applier
        self.snapshots = snapshots
        self.registry = registry
        self.iptables = iptables
        self.ipset = ipset
        self.audit = audit or AuditLogger(log_path=ctx.config.log_path)

    @classmethod
    def create(
        cls,
        ctx: ExecutionContext,
        *,
        session_factory: Optional[Callable[[], requests.Session]] = None,
        subnet_provider: Callable[[], Optional[str]] = detect_local_subnet,
        audit: Optional[AuditLogger] = None,
    ) -> "Orchestrator":
        """Wire the services for a run, each bound to its component name."""
        def bound(name: str) -> ExecutionContext:
            return ctx.for_component(name)

        iptables_ctx = bound("iptables")
        ipset_ctx = bound("ipset")
        systemd_ctx = bound("systemd")
        iptables = IptablesService(iptables_ctx, CommandExecutor(iptables_ctx))
        ipset = IpsetService(ipset_ctx, CommandExecutor(ipset_ctx))
        systemd = SystemdService(systemd_ctx, CommandExecutor(systemd_ctx))

        return cls(
            bound("orchestrator"),
            source=PrefixSource(bound("prefix_source"), session_factory=session_factory),
            applier=RuleApplier(bound("rule_applier"), iptables, ipset, subnet_provider),
            snapshots=SnapshotStore(bound("snapshot"), iptables, ipset, systemd),
            registry=CountryRegistry(bound("registry")),
            iptables=iptables,
            ipset=ipset,
            audit=audit,
        )

    # =========================================================================
    # Runs
    # =========================================================================

    def run(self, action: RunAction, country_codes: Optional[Iterable[str]] = None) -> RunResult:
        """Run the pipeline for one action.

        Args:
            action: ADD, REMOVE or UPDATE
            country_codes: Countries to act on; UPDATE defaults to the registry

        Returns:
            RunResult with the exit status and the run ledger
        """
        if country_codes is not None:
            country_codes = list(country_codes)
        self._record(AuditEventType.RUN_START, AuditResult.SUCCESS,
                     target_name=action.value,
                     parameters={"countries": country_codes or []})
        try:
            with exclusive_lock(self.ctx.config.lock_path):
                result = self._run_locked(action, country_codes)
        except LockError as e:
            self.ctx.console.error(e.message)
            self._record(AuditEventType.LOCK_BLOCKED, AuditResult.BLOCKED, error=e)
            result = RunResult(action, ExitStatus.FAILURE, message=e.message, error=e)

        self._record(
            AuditEventType.RUN_END,
            _audit_result(result.exit_status),
            target_name=action.value,
            parameters={
                "exit_status": int(result.exit_status),
                "succeeded": result.ledger.succeeded,
                "failed": result.ledger.failed,
            },
            message=result.message,
            error=result.error,
        )
        return result

    def _run_locked(self, action: RunAction, country_codes: Optional[Iterable[str]]) -> RunResult:
        try:
            self._record_baseline()
            result = self._pipeline(action, country_codes)
        except GeoAllowError as e:
            self.ctx.console.error(e.message)
            result = RunResult(action, ExitStatus.FAILURE, message=e.message, error=e)

        try:
            commit_ledger(self.registry, action, result)
        except (GeoAllowError, OSError) as e:
            self.ctx.console.error(f"Could not save country registry: {e}")
            self._record(AuditEventType.REGISTRY_UPDATE, AuditResult.FAILURE, error=e)
        else:
            self._record(AuditEventType.REGISTRY_UPDATE, AuditResult.SUCCESS,
                         parameters={"countries": self.registry.countries})
        return result

    def _pipeline(self, action: RunAction, country_codes: Optional[Iterable[str]]) -> RunResult:
        ledger = RunLedger()

        if action == RunAction.UPDATE and country_codes is None:
            codes = self.registry.countries
        else:
            codes = _dedupe_codes(country_codes or [])

        if not codes:
            if action == RunAction.UPDATE:
                return RunResult(action, ExitStatus.SUCCESS, ledger, "No countries managed; nothing to update")
            raise ValidationError(
                f"No countries given to {action.value}",
                hint="Pass one or more two-letter country codes",
            )

        managed = set(self.registry.countries)

        if action == RunAction.REMOVE:
            lists: dict[str, Optional[PrefixList]] = {}
            for code in codes:
                if code in managed:
                    lists[code] = None
                else:
                    ledger.fail(code, "not managed")
                    self.ctx.console.warn(f"{code}: not managed; nothing to remove")
            if not lists:
                return RunResult(action, ExitStatus.FAILURE, ledger, "None of the countries is managed")
            remaining = managed - set(lists)
            apply_action = ApplyAction.REMOVE
        else:
            batch = self.source.fetch_many(codes)
            for code, error in batch.failed.items():
                ledger.fail(code, error.message)
                self.ctx.console.warn(error.message)
                self._record(AuditEventType.FETCH_FAILED, AuditResult.FAILURE,
                             target_type="country", target_name=code, error=error)
            for code, outcome in batch.ok.items():
                event = (AuditEventType.FETCH_UPDATED if outcome.status == FetchStatus.UPDATED
                         else AuditEventType.FETCH_NOT_MODIFIED)
                self._record(event, AuditResult.SUCCESS,
                             target_type="country", target_name=code,
                             parameters={
                                 "prefixes": outcome.prefix_list.count,
                                 "dropped": outcome.dropped,
                                 "source_timestamp": outcome.prefix_list.source_timestamp,
                             })

            if batch.all_failed:
                return RunResult(action, ExitStatus.FAILURE, ledger, "Every fetch failed; firewall left untouched")

            if action == RunAction.UPDATE and batch.nothing_changed:
                drifted = [
                    code for code, outcome in batch.ok.items()
                    if not self._installed(code, outcome.prefix_list)
                ]
                if not drifted:
                    for code in batch.ok:
                        ledger.succeed(code)
                    status = ExitStatus.PARTIAL if ledger.has_failures else ExitStatus.SUCCESS
                    self.ctx.console.info("Registry data unchanged; firewall left untouched")
                    return RunResult(action, status, ledger, "Nothing changed")
                self.ctx.console.warn(
                    f"Firewall does not hold the stored lists of {', '.join(drifted)}; reapplying"
                )

            lists = {code: outcome.prefix_list for code, outcome in batch.ok.items()}
            remaining = managed | set(lists)
            apply_action = ApplyAction.ADD

        # An allow-list without countries would block everything
        relock = bool(remaining)
        if not relock:
            self.ctx.console.warn("No countries left; INPUT and FORWARD stay open")

        try:
            report = self.applier.apply(apply_action, lists, relock=relock)
        except ApplyError as e:
            for code in lists:
                ledger.fail(code, e.message)
            return self._recover(action, ledger, e)

        for code, reason in report.failed.items():
            ledger.fail(code, reason)
            self._record(AuditEventType.APPLY_STAGE_FAILED, AuditResult.FAILURE,
                         target_type="country", target_name=code, message=reason)
        for code in report.applied:
            ledger.succeed(code)

        if not report.applied:
            return RunResult(action, ExitStatus.FAILURE, ledger, "Nothing could be staged")

        self._record(AuditEventType.APPLY_COMMITTED, AuditResult.SUCCESS,
                     parameters={"action": apply_action.value, "countries": report.applied,
                                 "relock": relock})
        self._snapshot()

        status = ExitStatus.PARTIAL if ledger.has_failures else ExitStatus.SUCCESS
        return RunResult(action, status, ledger, f"{action.value} done for {', '.join(report.applied)}")

    def _installed(self, code: str, prefix_list: PrefixList) -> bool:
        """Whether the firewall holds exactly the stored list of a country.

        After a reboot or a failed apply the stored list can be current
        while the set or its rule is missing or stale.
        """
        name = permanent_set_name(code)
        try:
            return (
                self.ipset.exists(name)
                and self.ipset.count(name) == prefix_list.count
                and self.iptables.count_tagged_rules(Chain.INPUT, country_tag(code)) == 1
            )
        except FirewallError as e:
            self.ctx.console.verbose(f"{code}: could not inspect installed state: {e.message}")
            return False

    # =========================================================================
    # Recovery
    # =========================================================================

    def _recover(self, action: RunAction, ledger: RunLedger, error: ApplyError) -> RunResult:
        self.ctx.console.error(error.message)
        self._record(AuditEventType.APPLY_FAILED, AuditResult.FAILURE, error=error)

        restore_error = self._restore_or_teardown()
        if restore_error is None:
            return RunResult(action, ExitStatus.FATAL_RECOVERED, ledger,
                             "Apply failed; known-good snapshot restored", error)
        return RunResult(action, ExitStatus.FATAL_UNRECOVERED, ledger,
                         "Apply and restore failed; baseline policy applied", restore_error)

    def _restore_or_teardown(self) -> Optional[GeoAllowError]:
        """Restore the snapshot, falling back to minimal teardown.

        Returns:
            None if the restore succeeded, else the restore error
        """
        try:
            self.snapshots.restore()
        except GeoAllowError as e:
            self.ctx.console.error(e.message)
            self._record(AuditEventType.SNAPSHOT_RESTORE, AuditResult.FAILURE,
                         parameters={"part": getattr(e, "part", None)}, error=e)
            complete = self.snapshots.minimal_teardown(self.registry.baseline())
            self._record(AuditEventType.TEARDOWN,
                         AuditResult.SUCCESS if complete else AuditResult.PARTIAL,
                         parameters={"baseline": self.registry.baseline()})
            return e

        self._record(AuditEventType.SNAPSHOT_RESTORE, AuditResult.SUCCESS)
        return None

    def _snapshot(self) -> None:
        """Best-effort snapshot; failure only impairs future recovery."""
        try:
            path = self.snapshots.snapshot()
        except SnapshotError as e:
            self.ctx.console.warn(f"{e.message}; recovery will use the previous snapshot")
            self._record(AuditEventType.SNAPSHOT_WRITE, AuditResult.FAILURE, error=e)
            return
        self._record(AuditEventType.SNAPSHOT_WRITE, AuditResult.SUCCESS, target_name=str(path))

    def _record_baseline(self) -> None:
        if self.registry.baseline() is not None:
            return
        try:
            input_policy = self.iptables.get_policy(Chain.INPUT)
            forward_policy = self.iptables.get_policy(Chain.FORWARD)
        except FirewallError as e:
            self.ctx.console.warn(f"Could not record baseline policies: {e.message}")
            return
        self.registry.record_baseline(input_policy.value, forward_policy.value)
        self.registry.save()
        self.ctx.console.verbose(
            f"Recorded baseline policies INPUT={input_policy.value} "
            f"FORWARD={forward_policy.value}"
        )

    # =========================================================================
    # Operator commands
    # =========================================================================

    def snapshot(self) -> Path:
        """Take a snapshot now, under the run lock."""
        with exclusive_lock(self.ctx.config.lock_path):
            try:
                path = self.snapshots.snapshot()
            except SnapshotError as e:
                self._record(AuditEventType.SNAPSHOT_WRITE, AuditResult.FAILURE, error=e)
                raise
        self._record(AuditEventType.SNAPSHOT_WRITE, AuditResult.SUCCESS, target_name=str(path))
        return path

    def restore(self) -> ExitStatus:
        """Restore the known-good snapshot now, under the run lock.

        Returns:
            SUCCESS, or FATAL_UNRECOVERED after a minimal teardown
        """
        with exclusive_lock(self.ctx.config.lock_path):
            if self._restore_or_teardown() is None:
                return ExitStatus.SUCCESS
            return ExitStatus.FATAL_UNRECOVERED

    def status(self) -> dict[str, Any]:
        """Read-only view of managed countries and firewall state."""
        countries = []
        for code in self.registry.countries:
            entry: dict[str, Any] = {"country": code}
            try:
                stored = self.source.load(code)
            except ValidationError:
                stored = None
                entry["stored"] = "corrupt"
            if stored is not None:
                entry["stored"] = stored.count
                entry["source_timestamp"] = stored.source_timestamp

            name = permanent_set_name(code)
            entry["set_entries"] = self.ipset.count(name) if self.ipset.exists(name) else None
            entry["rule"] = self.iptables.count_tagged_rules(Chain.INPUT, country_tag(code)) > 0
            countries.append(entry)

        return {
            "countries": countries,
            "input_policy": self.iptables.get_policy(Chain.INPUT).value,
            "forward_policy": self.iptables.get_policy(Chain.FORWARD).value,
            "baseline": self.registry.baseline(),
            "last_run": self.registry.get("last_run"),
            "last_status": self.registry.get("last_status"),
            "snapshot": str(self.snapshots.path) if self.snapshots.exists() else None,
            "scheduler": {
                unit: self.snapshots.systemd.describe(unit)
                for unit in self.ctx.config.config.scheduler_units
            },
        }

    def _record(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        *,
        target_type: Optional[str] = None,
        target_name: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.audit.record(
            event_type,
            result,
            ctx=self.ctx,
            target_type=target_type,
            target_name=target_name,
            parameters=parameters,
            message=message,
            error=error,
        )


def _audit_result(status: ExitStatus) -> AuditResult:
    if status == ExitStatus.SUCCESS:
        return AuditResult.SUCCESS
    if status == ExitStatus.PARTIAL:
        return AuditResult.PARTIAL
    return AuditResult.FAILURE
