"""Integration tests for the update-and-recovery pipeline.

Every service is real; only the command line tools (through FakeFirewall)
and the registry HTTP endpoint (through FakeRegistry) are simulated.
"""

import json
from unittest.mock import patch

import pytest

from geoallow.core.exceptions import EmptySnapshotError, ReplayError
from geoallow.core.files import write_text_atomic
from geoallow.core.lock import exclusive_lock
from geoallow.services.orchestrator import ExitStatus, RunAction
from geoallow.services.registry import CountryRegistry

from fakes import (
    SCHEDULER_UNITS,
    FakeFirewall,
    FakeRegistry,
    make_context,
    make_orchestrator,
    make_prefixes,
    registry_body,
)


@pytest.fixture
def firewall():
    return FakeFirewall()


@pytest.fixture
def registry():
    registry = FakeRegistry()
    registry.reply("US", registry_body(make_prefixes(500)))
    registry.reply("DE", registry_body(make_prefixes(800, first_octet=20)))
    return registry


@pytest.fixture
def ctx(tmp_path):
    return make_context(tmp_path)


@pytest.fixture
def orchestrator(ctx, firewall, registry):
    return make_orchestrator(ctx, firewall, registry)


def managed(ctx):
    return CountryRegistry(ctx).countries


class TestAdd:
    """Adding countries to a fresh host."""

    def test_first_add(self, orchestrator, firewall, ctx):
        """The first add installs the allow-list and locks the host down."""
        result = orchestrator.run(RunAction.ADD, ["US"])

        assert result.exit_status == ExitStatus.SUCCESS
        assert result.ledger.succeeded == ["US"]
        assert firewall.policies["INPUT"] == "DROP"
        assert firewall.policies["FORWARD"] == "DROP"
        assert firewall.comments() == [
            "geoallow_global", "geoallow_global", "geoallow_global", "geoallow_US",
        ]
        assert len(firewall.sets["geoallow_us"].members) == 500
        assert ctx.config.snapshot_path.exists()

        registry = CountryRegistry(ctx)
        assert registry.countries == ["US"]
        assert registry.baseline() == ("ACCEPT", "ACCEPT")
        assert registry.get("last_status") == "success"

    def test_sets_are_sized(self, orchestrator, firewall):
        """Each set is sized for its own prefix count."""
        orchestrator.run(RunAction.ADD, ["US", "DE"])
        us, de = firewall.sets["geoallow_us"], firewall.sets["geoallow_de"]
        assert (us.hash_size, us.max_elements) == (512, 512)
        assert (de.hash_size, de.max_elements) == (512, 1024)

    def test_partial(self, orchestrator, registry, ctx):
        """A failed fetch is an item failure; the rest is applied."""
        result = orchestrator.run(RunAction.ADD, ["US", "XX"])

        assert result.exit_status == ExitStatus.PARTIAL
        assert result.ledger.succeeded == ["US"]
        assert "XX" in result.ledger.failed
        assert managed(ctx) == ["US"]

    def test_staging_failure_is_partial(self, orchestrator, firewall, ctx):
        """A country that cannot be staged is skipped."""
        firewall.fail_when("create", "geoallow_de_tmp")
        result = orchestrator.run(RunAction.ADD, ["US", "DE"])

        assert result.exit_status == ExitStatus.PARTIAL
        assert managed(ctx) == ["US"]
        assert "geoallow_de" not in firewall.sets

    def test_every_fetch_failed(self, orchestrator, registry, firewall, ctx):
        """Nothing fetched means nothing touched."""
        registry.reply("US", 503)
        result = orchestrator.run(RunAction.ADD, ["US"])

        assert result.exit_status == ExitStatus.FAILURE
        assert not firewall.ran("iptables", "-P")
        assert managed(ctx) == []
        assert CountryRegistry(ctx).get("last_status") == "failure"

    def test_store_failure_is_partial(self, orchestrator, ctx):
        """A list that cannot be written fails only its own country."""
        def write(path, content, **kwargs):
            if path.name == "DE.json":
                raise OSError(28, "No space left on device")
            return write_text_atomic(path, content, **kwargs)

        with patch("geoallow.services.prefix_source.write_text_atomic", side_effect=write):
            result = orchestrator.run(RunAction.ADD, ["US", "DE"])

        assert result.exit_status == ExitStatus.PARTIAL
        assert result.ledger.succeeded == ["US"]
        assert "DE" in result.ledger.failed
        assert managed(ctx) == ["US"]
        events = [json.loads(line) for line in ctx.config.log_path.read_text().splitlines()]
        assert events[-1]["event_type"] == "run.end"

    def test_no_countries(self, orchestrator):
        """Add without countries is a failed run."""
        assert orchestrator.run(RunAction.ADD, []).exit_status == ExitStatus.FAILURE

    def test_lock_held(self, orchestrator, registry, ctx):
        """A concurrent run fails without touching anything."""
        with exclusive_lock(ctx.config.lock_path):
            result = orchestrator.run(RunAction.ADD, ["US"])
        assert result.exit_status == ExitStatus.FAILURE
        assert registry.requested == []

    def test_dry_run(self, tmp_path, registry):
        """A dry run changes neither the firewall nor any file."""
        ctx = make_context(tmp_path, dry_run=True)
        firewall = FakeFirewall()
        firewall.dry_run = True
        before = firewall.state()

        result = make_orchestrator(ctx, firewall, registry).run(RunAction.ADD, ["US"])

        assert result.exit_status == ExitStatus.SUCCESS
        assert firewall.state() == before
        assert not ctx.config.registry_path.exists()
        assert not ctx.config.snapshot_path.exists()


class TestUpdate:
    """Refreshing managed countries."""

    @pytest.fixture(autouse=True)
    def installed(self, orchestrator):
        assert orchestrator.run(RunAction.ADD, ["US"]).exit_status == ExitStatus.SUCCESS

    def test_unchanged_is_noop(self, orchestrator, firewall):
        """No newer registry data means the firewall is not touched."""
        firewall.commands.clear()
        result = orchestrator.run(RunAction.UPDATE)

        assert result.exit_status == ExitStatus.SUCCESS
        assert not firewall.ran("iptables", "-P")
        assert not firewall.ran("ipset", "create")

    def test_newer_data_applied(self, orchestrator, registry, firewall, ctx):
        """Newer data replaces the set contents."""
        registry.reply("US", registry_body(make_prefixes(520), query_time="2024-05-02T00:00:00"))
        result = orchestrator.run(RunAction.UPDATE)

        assert result.exit_status == ExitStatus.SUCCESS
        assert len(firewall.sets["geoallow_us"].members) == 520
        assert firewall.sets["geoallow_us"].max_elements == 1024
        assert managed(ctx) == ["US"]

    def test_regression_keeps_firewall(self, orchestrator, registry, firewall):
        """A sharp drop is refused; the installed set stays."""
        registry.reply("US", registry_body(make_prefixes(300), query_time="2024-05-02T00:00:00"))
        result = orchestrator.run(RunAction.UPDATE)

        assert result.exit_status == ExitStatus.FAILURE
        assert len(firewall.sets["geoallow_us"].members) == 500

    def test_update_never_adds(self, orchestrator, ctx):
        """Update of an unmanaged country leaves the registry alone."""
        orchestrator.run(RunAction.UPDATE, ["DE"])
        assert managed(ctx) == ["US"]

    def test_reboot_reapplies_stored_lists(self, orchestrator, firewall):
        """Unchanged data with an empty firewall is applied again."""
        for rules in firewall.rules.values():
            rules.clear()
        firewall.sets.clear()
        firewall.policies.update(INPUT="ACCEPT", FORWARD="ACCEPT")

        result = orchestrator.run(RunAction.UPDATE)

        assert result.exit_status == ExitStatus.SUCCESS
        assert len(firewall.sets["geoallow_us"].members) == 500
        assert firewall.comments().count("geoallow_US") == 1
        assert firewall.policies["INPUT"] == "DROP"

    def test_failed_apply_retried(self, orchestrator, registry, firewall):
        """A list stored by a failed run is installed by the next update."""
        registry.reply("US", registry_body(make_prefixes(520), query_time="2024-05-02T00:00:00"))
        firewall.fail_when("ipset", "swap", times=1)
        assert orchestrator.run(RunAction.UPDATE).exit_status == ExitStatus.FATAL_RECOVERED
        assert len(firewall.sets["geoallow_us"].members) == 500

        result = orchestrator.run(RunAction.UPDATE)

        assert result.exit_status == ExitStatus.SUCCESS
        assert len(firewall.sets["geoallow_us"].members) == 520

    def test_unreadable_stored_list_replaced(self, orchestrator, ctx):
        """A stored list with a broken timestamp is refetched, not fatal."""
        path = ctx.config.lists_dir / "US.json"
        stored = json.loads(path.read_text())
        stored["source_timestamp"] = "garbage"
        path.write_text(json.dumps(stored))

        result = orchestrator.run(RunAction.UPDATE)

        assert result.exit_status == ExitStatus.SUCCESS
        assert json.loads(path.read_text())["source_timestamp"] == "2024-05-01T00:00:00"


class TestRemove:
    """Removing countries."""

    def test_remove_one(self, orchestrator, firewall, ctx):
        orchestrator.run(RunAction.ADD, ["US", "DE"])
        result = orchestrator.run(RunAction.REMOVE, ["DE"])

        assert result.exit_status == ExitStatus.SUCCESS
        assert managed(ctx) == ["US"]
        assert "geoallow_de" not in firewall.sets
        assert firewall.policies["INPUT"] == "DROP"

    def test_remove_last_leaves_host_open(self, orchestrator, firewall, ctx):
        """Without countries the host must not stay locked down."""
        orchestrator.run(RunAction.ADD, ["US"])
        result = orchestrator.run(RunAction.REMOVE, ["US"])

        assert result.exit_status == ExitStatus.SUCCESS
        assert managed(ctx) == []
        assert firewall.policies["INPUT"] == "ACCEPT"
        assert firewall.policies["FORWARD"] == "ACCEPT"
        assert firewall.sets == {}

    def test_remove_unmanaged(self, orchestrator, firewall):
        """Removing a country that is not managed fails."""
        result = orchestrator.run(RunAction.REMOVE, ["FR"])
        assert result.exit_status == ExitStatus.FAILURE
        assert "FR" in result.ledger.failed
        assert not firewall.ran("iptables", "-P")


class TestRecovery:
    """Apply failures and their recovery."""

    def test_restored_after_apply_failure(self, orchestrator, firewall, ctx):
        """A failed apply is rolled back to the previous good state."""
        orchestrator.run(RunAction.ADD, ["US"])
        good = firewall.state()

        firewall.fail_when("ipset", "swap")
        result = orchestrator.run(RunAction.ADD, ["DE"])

        assert result.exit_status == ExitStatus.FATAL_RECOVERED
        assert firewall.state() == good
        assert managed(ctx) == ["US"]
        assert CountryRegistry(ctx).get("last_status") == "fatal_recovered"

    def test_teardown_after_restore_failure(self, tmp_path, registry):
        """If the restore fails too, the baseline policies come back."""
        ctx = make_context(tmp_path)
        firewall = FakeFirewall(input_policy="ACCEPT", forward_policy="DROP")
        orchestrator = make_orchestrator(ctx, firewall, registry)
        orchestrator.run(RunAction.ADD, ["US"])

        firewall.fail_when("ipset", "swap")
        firewall.fail_when("iptables-restore")
        result = orchestrator.run(RunAction.ADD, ["DE"])

        assert result.exit_status == ExitStatus.FATAL_UNRECOVERED
        assert isinstance(result.error, ReplayError)
        assert firewall.policies["INPUT"] == "ACCEPT"
        assert firewall.policies["FORWARD"] == "DROP"
        assert not any(firewall.units[unit] for unit in SCHEDULER_UNITS)

    def test_first_run_failure_has_no_snapshot(self, orchestrator, firewall):
        """Without any snapshot the host falls back to its baseline."""
        firewall.fail_when("ipset", "swap")
        result = orchestrator.run(RunAction.ADD, ["US"])

        assert result.exit_status == ExitStatus.FATAL_UNRECOVERED
        assert isinstance(result.error, EmptySnapshotError)
        assert firewall.policies["INPUT"] == "ACCEPT"

    def test_operator_restore(self, orchestrator, firewall):
        """restore() brings back the snapshot on demand."""
        orchestrator.run(RunAction.ADD, ["US"])
        good = firewall.state()
        firewall.rules["INPUT"].clear()
        firewall.policies["INPUT"] = "ACCEPT"

        assert orchestrator.restore() == ExitStatus.SUCCESS
        assert firewall.state() == good


class TestReporting:
    """Status view and audit trail."""

    def test_status(self, orchestrator):
        orchestrator.run(RunAction.ADD, ["US"])
        state = orchestrator.status()

        assert state["countries"] == [{
            "country": "US",
            "stored": 500,
            "source_timestamp": "2024-05-01T00:00:00",
            "set_entries": 500,
            "rule": True,
        }]
        assert state["input_policy"] == "DROP"
        assert state["baseline"] == ("ACCEPT", "ACCEPT")
        assert state["last_status"] == "success"
        assert state["snapshot"] is not None
        assert state["scheduler"][SCHEDULER_UNITS[0]] == "active, enabled"

    def test_audit_log(self, orchestrator, ctx):
        """Every run leaves start and end events with its run id."""
        orchestrator.run(RunAction.ADD, ["US", "XX"])
        events = [json.loads(line) for line in ctx.config.log_path.read_text().splitlines()]
        types = [event["event_type"] for event in events]

        assert types[0] == "run.start"
        assert types[-1] == "run.end"
        assert "fetch.failed" in types
        assert "snapshot.write" in types
        assert events[-1]["parameters"]["exit_status"] == 20
        assert {event["run_id"] for event in events} == {ctx.run_id}
