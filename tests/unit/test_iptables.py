"""Unit tests for the iptables service."""

import pytest
from unittest.mock import Mock

from geoallow.core.executor import CommandResult
from geoallow.core.exceptions import ExecutionError, FirewallError
from geoallow.services.iptables import (
    IptablesService,
    Chain,
    Policy,
    GLOBAL_TAG,
    country_tag,
    rule_comment,
    is_suite_comment,
)


def result(stdout="", code=0):
    return CommandResult(command=[], return_code=code, stdout=stdout, stderr="")


INPUT_LISTING = """\
-P INPUT DROP
-A INPUT -i lo -m comment --comment geoallow_global -j ACCEPT
-A INPUT -p tcp -m tcp --dport 22 -j ACCEPT
-A INPUT -m set --match-set geoallow_us src -m comment --comment geoallow_US -j ACCEPT
-A INPUT -s 10.0.0.0/8 -m comment --comment "ops team" -j ACCEPT
"""


class TestTags:
    """Tests for comment tag helpers."""

    def test_country_tag(self):
        """Country tags should be upper-case."""
        assert country_tag("us") == "geoallow_US"
        assert GLOBAL_TAG == "geoallow_global"

    def test_rule_comment(self):
        """Should extract the --comment value."""
        assert rule_comment(["-A", "INPUT", "--comment", "x", "-j", "ACCEPT"]) == "x"
        assert rule_comment(["-A", "INPUT", "-j", "ACCEPT"]) is None
        assert rule_comment(["-A", "INPUT", "--comment"]) is None

    def test_is_suite_comment(self):
        """Only geoallow_ comments belong to the suite."""
        assert is_suite_comment("geoallow_DE")
        assert not is_suite_comment("ops team")
        assert not is_suite_comment(None)


class TestIptablesService:
    """Tests for IptablesService."""

    @pytest.fixture
    def mock_ctx(self):
        """Create a mock execution context."""
        ctx = Mock()
        ctx.dry_run = False
        ctx.console = Mock()
        return ctx

    @pytest.fixture
    def mock_executor(self):
        """Create a mock command executor."""
        return Mock()

    @pytest.fixture
    def service(self, mock_ctx, mock_executor):
        return IptablesService(mock_ctx, mock_executor)

    def test_get_policy(self, service, mock_executor):
        """Should parse the -P line."""
        mock_executor.run.return_value = result(INPUT_LISTING)
        assert service.get_policy(Chain.INPUT) == Policy.DROP
        command = mock_executor.run.call_args[0][0]
        assert command == ["iptables", "-w", "-S", "INPUT"]
        assert mock_executor.run.call_args[1]["mutating"] is False

    def test_get_policy_unparseable(self, service, mock_executor):
        """Missing -P line should raise FirewallError."""
        mock_executor.run.return_value = result("-A INPUT -j ACCEPT\n")
        with pytest.raises(FirewallError) as exc:
            service.get_policy(Chain.FORWARD)
        assert exc.value.chain == "FORWARD"

    def test_set_policy(self, service, mock_executor):
        """Should run iptables -P."""
        mock_executor.run.return_value = result()
        service.set_policy(Chain.FORWARD, Policy.ACCEPT)
        command = mock_executor.run.call_args[0][0]
        assert command == ["iptables", "-w", "-P", "FORWARD", "ACCEPT"]

    def test_list_rules(self, service, mock_executor):
        """Quoted comments should survive tokenizing."""
        mock_executor.run.return_value = result(INPUT_LISTING)
        rules = service.list_rules(Chain.INPUT)
        assert len(rules) == 4
        assert rules[3][-3] == "ops team"

    def test_append_rule(self, service, mock_executor):
        """Appended rules should carry the comment and target."""
        mock_executor.run.return_value = result()
        service.append_rule(Chain.INPUT, ["-i", "lo"], GLOBAL_TAG)
        command = mock_executor.run.call_args[0][0]
        assert command == [
            "iptables", "-w", "-A", "INPUT", "-i", "lo",
            "-m", "comment", "--comment", "geoallow_global", "-j", "ACCEPT",
        ]

    def test_delete_tagged_rules_selected_tags(self, service, mock_executor):
        """Only rules with a wanted tag should be deleted."""
        mock_executor.run.return_value = result(INPUT_LISTING)
        deleted = service.delete_tagged_rules(Chain.INPUT, {"geoallow_US"})
        assert deleted == 1
        delete_call = mock_executor.run.call_args_list[-1][0][0]
        assert delete_call[:4] == ["iptables", "-w", "-D", "INPUT"]
        assert "geoallow_us" in delete_call

    def test_delete_tagged_rules_any_suite_tag(self, service, mock_executor):
        """tags=None should delete every geoallow rule and nothing else."""
        mock_executor.run.return_value = result(INPUT_LISTING)
        deleted = service.delete_tagged_rules(Chain.INPUT)
        assert deleted == 2
        deleted_commands = [c[0][0] for c in mock_executor.run.call_args_list if "-D" in c[0][0]]
        assert all("ops team" not in c for c in deleted_commands)
        assert all("--dport" not in c for c in deleted_commands)

    def test_count_tagged_rules(self, service, mock_executor):
        """Should count rules with an exact tag."""
        mock_executor.run.return_value = result(INPUT_LISTING)
        assert service.count_tagged_rules(Chain.INPUT, "geoallow_US") == 1
        assert service.count_tagged_rules(Chain.INPUT, "geoallow_DE") == 0

    def test_failure_wrapped(self, service, mock_executor):
        """ExecutionError should surface as FirewallError."""
        mock_executor.run.side_effect = ExecutionError("boom", return_code=4, stderr="nope")
        with pytest.raises(FirewallError) as exc:
            service.set_policy(Chain.INPUT, Policy.DROP)
        assert "Exit code: 4" in exc.value.details

    def test_save_is_read_only(self, service, mock_executor):
        """iptables-save should run even in dry-run."""
        mock_executor.run.return_value = result("*filter\nCOMMIT\n")
        assert service.save() == "*filter\nCOMMIT\n"
        assert mock_executor.run.call_args[1]["mutating"] is False

    def test_restore_uses_noflush(self, service, mock_executor):
        """Replays must not flush foreign rules."""
        mock_executor.run.return_value = result()
        service.restore("*filter\nCOMMIT\n")
        command = mock_executor.run.call_args[0][0]
        assert command == ["iptables-restore", "--noflush"]
        assert mock_executor.run.call_args[1]["input_text"] == "*filter\nCOMMIT\n"

    def test_restore_failure(self, service, mock_executor):
        """A rejected dump should raise FirewallError."""
        mock_executor.run.side_effect = ExecutionError("rejected")
        with pytest.raises(FirewallError):
            service.restore("garbage")
