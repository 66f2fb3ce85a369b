"""Service abstractions for the packet filter, the registry and the pipeline."""

from geoallow.services.iptables import IptablesService
from geoallow.services.ipset import IpsetService
from geoallow.services.systemd import SystemdService
from geoallow.services.prefix_source import PrefixSource
from geoallow.services.rule_applier import RuleApplier
from geoallow.services.snapshot import SnapshotStore
from geoallow.services.registry import CountryRegistry
from geoallow.services.orchestrator import Orchestrator

__all__ = [
    "IptablesService",
    "IpsetService",
    "SystemdService",
    "PrefixSource",
    "RuleApplier",
    "SnapshotStore",
    "CountryRegistry",
    "Orchestrator",
]
