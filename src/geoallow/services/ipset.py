"""ipset address-set service.

Typed interface over the ipset tool. Every suite set is named
``geoallow_<cc>`` (permanent) or ``geoallow_<cc>_tmp`` (staging), so the
``geoallow_`` prefix doubles as the suite tag when listing, snapshotting or
cleaning up sets.
"""

import re
from typing import Iterable, Optional

from geoallow.core.context import ExecutionContext
from geoallow.core.executor import CommandExecutor, CommandResult
from geoallow.core.exceptions import ExecutionError, FirewallError
from geoallow.services.sizing import SetSize


SET_PREFIX = "geoallow_"
STAGING_SUFFIX = "_tmp"
SET_TYPE = "hash:net"
FAMILY_INET = "inet"

# ipset set names are limited to 31 characters
MAX_SET_NAME_LENGTH = 31

_ENTRIES_PATTERN = re.compile(r"^Number of entries:\s*(\d+)", re.MULTILINE)


def permanent_set_name(country_code: str) -> str:
    """Name of the enforced set for a country."""
    return f"{SET_PREFIX}{country_code.lower()}"


def staging_set_name(country_code: str) -> str:
    """Name of the staging set for a country."""
    return f"{permanent_set_name(country_code)}{STAGING_SUFFIX}"


def is_suite_set(name: str) -> bool:
    return name.startswith(SET_PREFIX)


def is_staging_set(name: str) -> bool:
    return is_suite_set(name) and name.endswith(STAGING_SUFFIX)


def count_restorable_lines(dump: str) -> int:
    """Count the create/add lines an ipset restore would apply."""
    return sum(
        1 for line in dump.splitlines()
        if line.startswith("create ") or line.startswith("add ")
    )


class IpsetService:
    """Safe interface for ipset address-set management.

    Features:
    - Batched loads through a single ``ipset restore``
    - Atomic swap between staging and permanent sets
    - Dump and replay in ipset's own restore format
    - Dry-run mode support (read-only queries still run)
    """

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        """Initialize ipset service.

        Args:
            ctx: Execution context
            executor: Command executor
        """
        self.ctx = ctx
        self.executor = executor

    # =========================================================================
    # Queries
    # =========================================================================

    def exists(self, name: str) -> bool:
        """Check if a set exists."""
        result = self.executor.run(
            ["ipset", "list", "-n", name],
            check=False,
            mutating=False,
        )
        return result.success

    def list_names(self, prefix: str = SET_PREFIX) -> list[str]:
        """List set names starting with prefix.

        Args:
            prefix: Name prefix to filter on (the suite tag by default)

        Returns:
            Matching set names, in ipset's order
        """
        result = self._run(["ipset", "list", "-n"], "list sets", mutating=False)
        return [name.strip() for name in result.lines if name.strip().startswith(prefix)]

    def count(self, name: str) -> int:
        """Number of entries in a set.

        Raises:
            FirewallError: If the set does not exist
        """
        result = self._run(["ipset", "list", "-t", name], f"inspect set {name}", mutating=False)
        match = _ENTRIES_PATTERN.search(result.stdout)
        if not match:
            # Older ipset releases print no entry count in terse mode
            full = self._run(["ipset", "list", name], f"inspect set {name}", mutating=False)
            members = full.stdout.split("Members:", 1)
            return len(members[1].split()) if len(members) == 2 else 0
        return int(match.group(1))

    def save(self, names: Iterable[str]) -> str:
        """Dump sets in restore format.

        Args:
            names: Sets to dump

        Returns:
            Concatenated ``ipset save`` output
        """
        chunks = []
        for name in names:
            result = self._run(["ipset", "save", name], f"dump set {name}", mutating=False)
            chunks.append(result.stdout if result.stdout.endswith("\n") else result.stdout + "\n")
        return "".join(chunks)

    # =========================================================================
    # Mutations
    # =========================================================================

    def create(
        self,
        name: str,
        set_size: SetSize,
        *,
        family: str = FAMILY_INET,
        exist_ok: bool = False,
    ) -> None:
        """Create a hash:net set.

        Args:
            name: Set name
            set_size: Sizing parameters
            family: Address family (inet)
            exist_ok: Don't fail if an identical set already exists
        """
        if len(name) > MAX_SET_NAME_LENGTH:
            raise FirewallError(f"Set name too long for ipset: {name}")

        cmd = [
            "ipset", "create", name, SET_TYPE,
            "family", family,
            "hashsize", str(set_size.hash_size),
            "maxelem", str(set_size.max_elements),
        ]
        if exist_ok:
            cmd.append("-exist")
        self._run(cmd, f"create set {name}")

    def destroy(self, name: str, *, missing_ok: bool = True) -> bool:
        """Destroy a set.

        Returns:
            True if a set was destroyed, False if it did not exist
        """
        if missing_ok and not self.ctx.dry_run and not self.exists(name):
            return False
        self._run(["ipset", "destroy", name], f"destroy set {name}")
        return True

    def swap(self, first: str, second: str) -> None:
        """Atomically exchange the contents of two sets."""
        self._run(["ipset", "swap", first, second], f"swap {first} with {second}")

    def load(self, name: str, prefixes: list[str]) -> int:
        """Bulk-load prefixes into a set in one ``ipset restore`` batch.

        Returns:
            Number of prefixes submitted
        """
        payload = "".join(f"add {name} {prefix}\n" for prefix in prefixes)
        self._run(
            ["ipset", "restore", "-exist"],
            f"load {len(prefixes)} prefixes into {name}",
            input_text=payload,
        )
        return len(prefixes)

    def restore(self, dump: str) -> int:
        """Replay a dump produced by save().

        Returns:
            Number of create/add lines replayed
        """
        self._run(["ipset", "restore"], "replay set dump", input_text=dump)
        return count_restorable_lines(dump)

    # =========================================================================
    # Private Helpers
    # =========================================================================

    def _run(
        self,
        command: list[str],
        what: str,
        *,
        input_text: Optional[str] = None,
        mutating: bool = True,
    ) -> CommandResult:
        try:
            return self.executor.run(
                command,
                input_text=input_text,
                mutating=mutating,
            )
        except ExecutionError as e:
            raise FirewallError(
                f"ipset failed to {what}",
                details=e.details,
            ) from e
