"""Network detection utilities.

Provides:
- Primary (default-route) interface discovery
- Local subnet detection for the local-subnet allow rule
"""

import ipaddress
import subprocess
from typing import Optional


def _ip_command(args: list[str]) -> Optional[str]:
    try:
        result = subprocess.run(
            ["ip", *args],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return None

    if result.returncode != 0:
        return None
    return result.stdout


def primary_interface() -> Optional[str]:
    """Name of the interface carrying the IPv4 default route.

    Returns:
        Interface name, or None if there is no default route
    """
    output = _ip_command(["-4", "route", "show", "default"])
    if not output:
        return None

    for line in output.splitlines():
        parts = line.split()
        # Format: default via GW dev IFACE proto ...
        if parts and parts[0] == "default" and "dev" in parts:
            idx = parts.index("dev")
            if idx + 1 < len(parts):
                return parts[idx + 1]
    return None


def detect_local_subnet(interface: Optional[str] = None) -> Optional[str]:
    """Detect the IPv4 subnet of the primary interface.

    Args:
        interface: Interface to inspect (default: default-route interface)

    Returns:
        Network in CIDR notation (e.g. "192.168.1.0/24"), or None if it
        cannot be determined
    """
    iface = interface or primary_interface()
    if not iface:
        return None

    output = _ip_command(["-4", "-o", "addr", "show", "dev", iface])
    if not output:
        return None

    for line in output.splitlines():
        parts = line.split()
        # Format: index: interface inet IP/prefix brd ... scope global ...
        for i, part in enumerate(parts):
            if part == "inet" and i + 1 < len(parts):
                try:
                    network = ipaddress.IPv4Network(parts[i + 1], strict=False)
                except ValueError:
                    continue
                if not network.is_loopback:
                    return str(network)
    return None
