"""Iptables packet-filter service.

Typed interface over iptables for the operations the pipeline needs:
- Default chain policies
- Appending and deleting rules identified by a comment tag
- Dumping the filter table and replaying a dump

Every rule geoallow installs carries an iptables comment starting with
``geoallow_``: ``geoallow_global`` for the shared allow rules and
``geoallow_<CC>`` for a country's set-match rule.
"""

import shlex
from enum import Enum
from typing import Iterable, Optional

from geoallow.core.context import ExecutionContext
from geoallow.core.executor import CommandExecutor, CommandResult
from geoallow.core.exceptions import ExecutionError, FirewallError


COMMENT_PREFIX = "geoallow_"
GLOBAL_TAG = f"{COMMENT_PREFIX}global"


class Chain(str, Enum):
    """Built-in filter chains."""
    INPUT = "INPUT"
    FORWARD = "FORWARD"
    OUTPUT = "OUTPUT"


class Policy(str, Enum):
    """Default chain policy."""
    ACCEPT = "ACCEPT"
    DROP = "DROP"


MANAGED_CHAINS = (Chain.INPUT, Chain.FORWARD)


def country_tag(country_code: str) -> str:
    """Comment tag of a country's allow rule."""
    return f"{COMMENT_PREFIX}{country_code.upper()}"


def rule_comment(tokens: list[str]) -> Optional[str]:
    """Extract the --comment value from a tokenized rule, if any."""
    for i, token in enumerate(tokens[:-1]):
        if token == "--comment":
            return tokens[i + 1]
    return None


def is_suite_comment(comment: Optional[str]) -> bool:
    return bool(comment) and comment.startswith(COMMENT_PREFIX)


class IptablesService:
    """Safe interface for iptables rule and policy management.

    Features:
    - Comment-tagged rule ownership
    - Policy get/set for INPUT and FORWARD
    - iptables-save / iptables-restore --noflush round trips
    - Dry-run mode support (read-only queries still run)
    """

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        """Initialize iptables service.

        Args:
            ctx: Execution context
            executor: Command executor
        """
        self.ctx = ctx
        self.executor = executor

    # =========================================================================
    # Policies
    # =========================================================================

    def get_policy(self, chain: Chain) -> Policy:
        """Read the default policy of a built-in chain."""
        result = self._run_iptables(["-S", chain.value], mutating=False)
        for line in result.lines:
            parts = line.split()
            if len(parts) == 3 and parts[0] == "-P" and parts[1] == chain.value:
                try:
                    return Policy(parts[2])
                except ValueError:
                    break
        raise FirewallError(
            f"Could not determine {chain.value} policy",
            chain=chain.value,
            details=result.lines[:1],
        )

    def set_policy(self, chain: Chain, policy: Policy) -> None:
        """Set the default policy of a built-in chain."""
        self.ctx.console.verbose(f"Setting {chain.value} policy to {policy.value}")
        self._run_iptables(["-P", chain.value, policy.value])

    # =========================================================================
    # Rules
    # =========================================================================

    def list_rules(self, chain: Chain) -> list[list[str]]:
        """List a chain's rules as tokenized ``-A`` specs."""
        result = self._run_iptables(["-S", chain.value], mutating=False)
        rules = []
        for line in result.lines:
            if line.startswith("-A "):
                rules.append(shlex.split(line))
        return rules

    def append_rule(
        self,
        chain: Chain,
        match_args: list[str],
        comment: str,
        *,
        target: str = "ACCEPT",
    ) -> None:
        """Append a tagged rule to a chain.

        Args:
            chain: Chain to append to
            match_args: Match arguments (e.g. ["-i", "lo"])
            comment: Ownership tag stored as the rule comment
            target: Jump target
        """
        args = ["-A", chain.value, *match_args,
                "-m", "comment", "--comment", comment,
                "-j", target]
        self.ctx.console.verbose(f"Adding rule: {shlex.join(args)}")
        self._run_iptables(args)

    def delete_tagged_rules(
        self,
        chain: Chain,
        tags: Optional[Iterable[str]] = None,
    ) -> int:
        """Delete every rule in chain carrying one of the given comment tags.

        Args:
            chain: Chain to clean
            tags: Exact comment tags to match; None matches any suite comment

        Returns:
            Number of rules deleted
        """
        wanted = set(tags) if tags is not None else None
        deleted = 0
        for tokens in self.list_rules(chain):
            comment = rule_comment(tokens)
            if wanted is None:
                if not is_suite_comment(comment):
                    continue
            elif comment not in wanted:
                continue
            self._run_iptables(["-D", *tokens[1:]])
            deleted += 1
        return deleted

    def count_tagged_rules(self, chain: Chain, tag: str) -> int:
        """Number of rules in chain whose comment equals tag."""
        return sum(1 for tokens in self.list_rules(chain) if rule_comment(tokens) == tag)

    # =========================================================================
    # Dump / replay
    # =========================================================================

    def save(self) -> str:
        """Dump the filter table in iptables-restore format."""
        try:
            result = self.executor.run(
                ["iptables-save", "-t", "filter"],
                mutating=False,
            )
        except ExecutionError as e:
            raise FirewallError("iptables-save failed", details=e.details) from e
        return result.stdout

    def restore(self, dump: str) -> None:
        """Replay a filter-table dump without flushing existing rules."""
        try:
            self.executor.run(
                ["iptables-restore", "--noflush"],
                input_text=dump,
            )
        except ExecutionError as e:
            raise FirewallError("iptables-restore rejected the dump", details=e.details) from e

    # =========================================================================
    # Private Helpers
    # =========================================================================

    def _run_iptables(
        self,
        args: list[str],
        *,
        check: bool = True,
        mutating: bool = True,
    ) -> CommandResult:
        """Run an iptables command.

        Uses -w to wait for the xtables lock held by other tools.
        """
        cmd = ["iptables", "-w", *args]
        try:
            return self.executor.run(cmd, check=check, mutating=mutating)
        except ExecutionError as e:
            raise FirewallError(
                f"iptables command failed: {shlex.join(cmd)}",
                details=e.details,
            ) from e
