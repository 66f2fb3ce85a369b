"""
geoallow - country allow-list firewall.

Fetches per-country IPv4 prefix lists from the RIPEstat registry and
enforces them as ipset-matched iptables allow rules, with a known-good
snapshot to recover from failed updates.
"""

__version__ = "1.0.0"
__author__ = "geoallow maintainers"
