"""Country prefix-list source.

Fetches one country's IPv4 prefixes from the RIPEstat registry, validates
them, guards against stale or truncated registry data and stores the
accepted list on disk. Nothing here touches the firewall.

Outcomes of a fetch:
- UPDATED: a newer, validated list was stored
- NOT_MODIFIED: the registry has nothing newer; the stored list stands
- TransientFetchError: network/registry/parse problem, retry next run
- RegressionError: list shrank suspiciously, stored list kept
"""

import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from geoallow.core.context import ExecutionContext
from geoallow.core.exceptions import (
    FetchError,
    RegressionError,
    TransientFetchError,
    ValidationError,
)
from geoallow.core.files import write_text_atomic
from geoallow.core.validation import is_ipv4_cidr, normalize_country_code


FAMILY_IPV4 = "ipv4"
USER_AGENT = "geoallow"
RETRY_STATUSES = (429, 500, 502, 503, 504)


def parse_registry_time(value: str) -> datetime:
    """Parse a registry timestamp (ISO 8601, naive values are UTC).

    Raises:
        ValueError: If the value is not an ISO 8601 timestamp
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"not a timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class PrefixList:
    """One country's validated prefix list.

    source_timestamp is the registry's data generation time, never the
    local fetch time, so freshness checks survive retries and clock skew.
    """
    country_code: str
    prefixes: list[str]
    source_timestamp: str
    family: str = FAMILY_IPV4

    @property
    def count(self) -> int:
        return len(self.prefixes)

    @property
    def timestamp(self) -> datetime:
        return parse_registry_time(self.source_timestamp)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "country_code": self.country_code,
            "family": self.family,
            "source_timestamp": self.source_timestamp,
            "count": self.count,
            "prefixes": self.prefixes,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "PrefixList":
        """Create from dictionary (JSON deserialization).

        Raises:
            ValueError: If the timestamp is unreadable
            TypeError: If the prefixes are not a list
        """
        if not isinstance(d["prefixes"], list):
            raise TypeError("prefixes is not a list")
        parse_registry_time(d["source_timestamp"])
        return cls(
            country_code=d["country_code"],
            prefixes=list(d["prefixes"]),
            source_timestamp=d["source_timestamp"],
            family=d.get("family", FAMILY_IPV4),
        )


class FetchStatus(str, Enum):
    """Non-error fetch outcomes."""
    UPDATED = "updated"
    NOT_MODIFIED = "not_modified"


@dataclass
class FetchOutcome:
    """Successful fetch result (including "nothing newer")."""
    country_code: str
    status: FetchStatus
    prefix_list: PrefixList
    dropped: int = 0

    @property
    def changed(self) -> bool:
        return self.status == FetchStatus.UPDATED


@dataclass
class FetchBatch:
    """Results of fetching several countries, partitioned."""
    ok: dict[str, FetchOutcome] = field(default_factory=dict)
    failed: dict[str, FetchError] = field(default_factory=dict)

    @property
    def all_failed(self) -> bool:
        return not self.ok and bool(self.failed)

    @property
    def nothing_changed(self) -> bool:
        return all(not outcome.changed for outcome in self.ok.values())


def build_session(retries: int) -> requests.Session:
    """HTTP session with a small, bounded retry budget."""
    session = requests.Session()
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=1,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers["User-Agent"] = USER_AGENT
    return session


class PrefixSource:
    """Fetches, validates and stores per-country prefix lists.

    Exclusively owns the on-disk lists under ``<data_dir>/lists``.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        session_factory: Optional[Callable[[], requests.Session]] = None,
    ) -> None:
        """Initialize prefix source.

        Args:
            ctx: Execution context
            session_factory: Builds the HTTP session for each fetch
        """
        self.ctx = ctx
        cfg = ctx.config.config
        self.url_template = cfg.registry_url
        self.timeout = cfg.fetch_timeout
        self.min_prefixes = cfg.min_prefixes
        self.regression_ratio = cfg.regression_ratio
        self.workers = cfg.fetch_workers
        self.lists_dir = ctx.config.lists_dir
        self._session_factory = session_factory or (lambda: build_session(cfg.fetch_retries))

    # =========================================================================
    # Stored lists
    # =========================================================================

    def list_path(self, country_code: str) -> Path:
        return self.lists_dir / f"{country_code.upper()}.json"

    def load(self, country_code: str) -> Optional[PrefixList]:
        """Read the stored list for a country.

        Returns:
            The stored list, or None if the country was never fetched

        Raises:
            ValidationError: If the stored file is unreadable or corrupt
        """
        path = self.list_path(country_code)
        if not path.exists():
            return None

        try:
            with open(path) as f:
                return PrefixList.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise ValidationError(
                f"Stored prefix list is corrupt: {path}",
                hint="Delete the file to force a fresh fetch",
                details=[str(e)],
            ) from e

    def _store(self, prefix_list: PrefixList) -> None:
        path = self.list_path(prefix_list.country_code)
        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(
                f"Write {prefix_list.count} prefixes to {path}"
            )
            return
        try:
            write_text_atomic(path, json.dumps(prefix_list.to_dict(), indent=1) + "\n")
        except OSError as e:
            raise TransientFetchError(
                f"{prefix_list.country_code}: could not store prefix list at {path}",
                country_code=prefix_list.country_code,
                hint="Check free space and permissions of the data directory",
                details=[str(e)],
            ) from e

    # =========================================================================
    # Fetching
    # =========================================================================

    def fetch(self, country_code: str) -> FetchOutcome:
        """Fetch and validate one country's list, storing it if newer.

        Args:
            country_code: Two-letter country code

        Returns:
            FetchOutcome with status UPDATED or NOT_MODIFIED

        Raises:
            TransientFetchError: Network, registry or validation failure
            RegressionError: Count dropped below the regression threshold
        """
        try:
            code = normalize_country_code(country_code)
        except ValidationError as e:
            raise TransientFetchError(e.message, country_code=country_code, hint=e.hint) from e

        body = self._request(code)
        query_time, entries = self._parse(code, body)

        accepted = [entry for entry in entries if is_ipv4_cidr(entry)]
        dropped = len(entries) - len(accepted)
        if dropped:
            self.ctx.console.warn(
                f"{code}: dropped {dropped} of {len(entries)} malformed registry entries"
            )

        if len(accepted) < self.min_prefixes:
            raise TransientFetchError(
                f"{code}: only {len(accepted)} valid prefixes (minimum {self.min_prefixes})",
                country_code=code,
                hint="The registry reply looks partial; it will be retried next run",
            )

        fresh = PrefixList(country_code=code, prefixes=accepted, source_timestamp=query_time)

        try:
            stored = self.load(code)
        except ValidationError as e:
            self.ctx.console.warn(f"{code}: {e.message}; replacing it")
            stored = None

        if stored is not None:
            if fresh.timestamp <= stored.timestamp:
                self.ctx.console.verbose(
                    f"{code}: registry data ({query_time}) is not newer than stored "
                    f"({stored.source_timestamp})"
                )
                return FetchOutcome(code, FetchStatus.NOT_MODIFIED, stored, dropped)

            if fresh.count < stored.count * self.regression_ratio:
                raise RegressionError(
                    f"{code}: prefix count fell from {stored.count} to {fresh.count} "
                    "(probable data corruption or partial registry outage)",
                    country_code=code,
                    hint="The stored list is kept; check the registry before forcing an update",
                )

        self._store(fresh)
        self.ctx.console.info(f"{code}: fetched {fresh.count} prefixes ({query_time})")
        return FetchOutcome(code, FetchStatus.UPDATED, fresh, dropped)

    def fetch_many(self, country_codes: Iterable[str]) -> FetchBatch:
        """Fetch several countries concurrently.

        Fetches are independent and never touch the firewall, so they run
        in a bounded thread pool. Item failures are collected, not raised.
        """
        codes = list(country_codes)
        batch = FetchBatch()
        if not codes:
            return batch

        def _one(code: str) -> tuple[str, Any]:
            try:
                return code, self.fetch(code)
            except FetchError as e:
                return code, e

        workers = max(1, min(self.workers, len(codes)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
            results = list(pool.map(_one, codes))

        # Keep the caller's order
        for code, result in results:
            key = code.upper()
            if isinstance(result, FetchOutcome):
                batch.ok[key] = result
            else:
                batch.failed[key] = result
        return batch

    def _request(self, code: str) -> Any:
        url = self.url_template.replace("{cc}", code)
        self.ctx.console.debug(f"GET {url}")
        session = self._session_factory()
        try:
            response = session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise TransientFetchError(
                f"{code}: registry request failed",
                country_code=code,
                details=[str(e)],
            ) from e
        except ValueError as e:
            raise TransientFetchError(
                f"{code}: registry reply is not JSON",
                country_code=code,
                details=[str(e)],
            ) from e
        finally:
            session.close()

    def _parse(self, code: str, body: Any) -> tuple[str, list[str]]:
        """Extract (query_time, ipv4 entries) from a registry reply."""
        if not isinstance(body, dict):
            raise TransientFetchError(f"{code}: unexpected registry reply shape", country_code=code)

        status = body.get("status")
        if status != "ok":
            raise TransientFetchError(
                f"{code}: registry returned status {status!r}",
                country_code=code,
                details=[str(m) for m in body.get("messages", [])][:5],
            )

        data = body.get("data")
        resources = data.get("resources") if isinstance(data, dict) else None
        entries = resources.get("ipv4") if isinstance(resources, dict) else None
        query_time = data.get("query_time") if isinstance(data, dict) else None

        if not isinstance(entries, list) or not isinstance(query_time, str):
            raise TransientFetchError(
                f"{code}: registry reply lacks data.query_time or data.resources.ipv4",
                country_code=code,
            )

        try:
            parse_registry_time(query_time)
        except ValueError as e:
            raise TransientFetchError(
                f"{code}: unreadable registry timestamp {query_time!r}",
                country_code=code,
            ) from e

        return query_time, [str(entry).strip() for entry in entries]
