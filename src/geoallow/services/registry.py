"""Country registry.

The persistent record of which countries are managed, plus the host's
pre-management baseline policies and the outcome of the last run. Stored
as a flat YAML key-value file; only the Orchestrator writes it, and only
through commit_ledger after a run finished.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from geoallow.core.context import ExecutionContext
from geoallow.core.exceptions import ConfigurationError
from geoallow.core.files import write_text_atomic


# Registry fields
COUNTRIES = "countries"
BASELINE_INPUT_POLICY = "baseline_input_policy"
BASELINE_FORWARD_POLICY = "baseline_forward_policy"
LAST_RUN = "last_run"
LAST_STATUS = "last_status"

REGISTRY_VERSION = 1


@dataclass
class RunLedger:
    """Per-run outcome, built fresh for every run and committed once."""
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def succeed(self, country_code: str) -> None:
        if country_code not in self.succeeded:
            self.succeeded.append(country_code)
        self.failed.pop(country_code, None)

    def fail(self, country_code: str, reason: str) -> None:
        if country_code in self.succeeded:
            self.succeeded.remove(country_code)
        self.failed[country_code] = reason

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)


class CountryRegistry:
    """YAML-backed key-value store.

    Reads are lazy; writes happen only on save() and are atomic.
    """

    def __init__(self, ctx: ExecutionContext, path: Optional[Path] = None) -> None:
        """Initialize registry.

        Args:
            ctx: Execution context
            path: Registry file (defaults to the configured registry path)
        """
        self.ctx = ctx
        self.path = path or ctx.config.registry_path
        self._data: Optional[dict[str, Any]] = None

    @property
    def data(self) -> dict[str, Any]:
        if self._data is None:
            self._data = self._read()
        return self._data

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"version": REGISTRY_VERSION}

        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            raise ConfigurationError(
                f"Cannot read country registry: {self.path}",
                hint="Fix or remove the file; removing it forgets all managed countries",
                details=[str(e)],
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Country registry must contain a mapping: {self.path}",
            )
        return data

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def save(self) -> None:
        """Write the registry atomically."""
        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Would save country registry to {self.path}")
            return

        content = yaml.safe_dump(
            self.data,
            default_flow_style=False,
            sort_keys=False,
        )
        write_text_atomic(self.path, content)
        self.ctx.console.debug(f"Registry saved to {self.path}")

    # =========================================================================
    # Typed helpers
    # =========================================================================

    @property
    def countries(self) -> list[str]:
        """Managed countries, sorted, upper-case."""
        return sorted({str(code).upper() for code in self.get(COUNTRIES) or []})

    def set_countries(self, codes: Iterable[str]) -> None:
        self.set(COUNTRIES, sorted({code.upper() for code in codes}))

    def baseline(self) -> Optional[tuple[str, str]]:
        """Recorded pre-management (INPUT, FORWARD) policies, if any."""
        input_policy = self.get(BASELINE_INPUT_POLICY)
        forward_policy = self.get(BASELINE_FORWARD_POLICY)
        if input_policy is None or forward_policy is None:
            return None
        return str(input_policy), str(forward_policy)

    def record_baseline(self, input_policy: str, forward_policy: str) -> None:
        self.set(BASELINE_INPUT_POLICY, input_policy)
        self.set(BASELINE_FORWARD_POLICY, forward_policy)

    def record_run(self, status: str) -> None:
        self.set(LAST_RUN, datetime.now(timezone.utc).isoformat(timespec="seconds"))
        self.set(LAST_STATUS, status)
