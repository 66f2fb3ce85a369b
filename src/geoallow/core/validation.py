"""Input validation utilities.

Provides validation for:
- ISO 3166 alpha-2 country codes
- IPv4 prefixes as delivered by the registry (strict dotted-quad pattern)
- Local subnet overrides
- Registry URL templates

All validators return the validated value or raise ValidationError.
"""

import ipaddress
import re
from urllib.parse import urlparse

from geoallow.core.exceptions import ValidationError


COUNTRY_CODE_PATTERN = re.compile(r"^[A-Z]{2}$")

# Dotted quad with octets 0-255 and an optional /0-/32 mask
_OCTET = r"(?:25[0-5]|2[0-4][0-9]|1[0-9]{2}|[1-9]?[0-9])"
IPV4_CIDR_PATTERN = re.compile(
    rf"^{_OCTET}\.{_OCTET}\.{_OCTET}\.{_OCTET}(?:/(?:3[0-2]|[12]?[0-9]))?$"
)

URL_PLACEHOLDER = "{cc}"


def normalize_country_code(value: str) -> str:
    """Validate a two-letter country code and return it upper-cased.

    Args:
        value: Country code, any case

    Returns:
        Upper-case country code

    Raises:
        ValidationError: If the code is not two ASCII letters
    """
    code = (value or "").strip().upper()
    if not COUNTRY_CODE_PATTERN.match(code):
        raise ValidationError(
            f"Invalid country code: {value!r}",
            hint="Use a two-letter ISO 3166 code such as US or DE",
        )
    return code


def is_ipv4_cidr(value: str) -> bool:
    """Check a string against the registry IPv4 prefix pattern."""
    return bool(IPV4_CIDR_PATTERN.match(value))


def validate_subnet(value: str) -> str:
    """Validate an IPv4 subnet used for the local-subnet allow rule.

    Args:
        value: CIDR string like "192.168.1.0/24"

    Returns:
        The normalized network string

    Raises:
        ValidationError: If the subnet is invalid or allows everything
    """
    value = value.strip()
    try:
        network = ipaddress.IPv4Network(value, strict=False)
    except ValueError as e:
        raise ValidationError(
            f"Invalid local subnet: {value}",
            hint="Use format like 192.168.1.0/24",
            details=[str(e)],
        ) from e

    if network.prefixlen == 0:
        raise ValidationError(
            f"'{value}' allows access from ANYWHERE on the internet",
            hint="Set local_subnet to the host's LAN, not 0.0.0.0/0",
        )

    return str(network)


def validate_registry_url(value: str) -> str:
    """Validate the registry URL template.

    Args:
        value: URL containing the {cc} placeholder

    Returns:
        The validated template

    Raises:
        ValidationError: If the template is unusable
    """
    value = value.strip()

    if URL_PLACEHOLDER not in value:
        raise ValidationError(
            f"Registry URL has no {URL_PLACEHOLDER} placeholder: {value}",
            hint="The country code is substituted into the URL",
        )

    parsed = urlparse(value.replace(URL_PLACEHOLDER, "XX"))
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        raise ValidationError(
            f"Invalid registry URL: {value}",
            hint="Provide a complete URL like https://stat.ripe.net/...",
        )

    return value
