"""Unit tests for the validation module."""

import pytest

from geoallow.core.validation import (
    normalize_country_code,
    is_ipv4_cidr,
    validate_subnet,
    validate_registry_url,
)
from geoallow.core.exceptions import ValidationError


class TestNormalizeCountryCode:
    """Tests for country code validation."""

    def test_valid_codes(self):
        """Two-letter codes should pass, upper-cased."""
        assert normalize_country_code("US") == "US"
        assert normalize_country_code("de") == "DE"
        assert normalize_country_code(" fr ") == "FR"

    def test_wrong_length(self):
        """Codes that are not two letters should fail."""
        for value in ("U", "USA", ""):
            with pytest.raises(ValidationError) as exc:
                normalize_country_code(value)
            assert "Invalid country code" in str(exc.value)

    def test_non_letters(self):
        """Digits and punctuation should fail."""
        for value in ("U1", "1A", "U-"):
            with pytest.raises(ValidationError):
                normalize_country_code(value)

    def test_hint_present(self):
        """Errors should suggest the expected format."""
        with pytest.raises(ValidationError) as exc:
            normalize_country_code("xyz")
        assert exc.value.hint is not None


class TestIsIpv4Cidr:
    """Tests for the registry prefix pattern."""

    def test_boundaries_accepted(self):
        """Lowest and highest addresses and masks should pass."""
        assert is_ipv4_cidr("0.0.0.0/0")
        assert is_ipv4_cidr("255.255.255.255/32")
        assert is_ipv4_cidr("10.0.0.0/8")
        assert is_ipv4_cidr("192.168.1.1")

    def test_octet_out_of_range(self):
        """Octets above 255 should fail."""
        assert not is_ipv4_cidr("256.0.0.0/8")
        assert not is_ipv4_cidr("1.2.3.300")

    def test_mask_out_of_range(self):
        """Masks above /32 should fail."""
        assert not is_ipv4_cidr("1.2.3.4/33")
        assert not is_ipv4_cidr("1.2.3.4/")

    def test_malformed(self):
        """Non dotted-quad values should fail."""
        assert not is_ipv4_cidr("1.2.3/24")
        assert not is_ipv4_cidr("2001:db8::/32")
        assert not is_ipv4_cidr("1.2.3.4/24 ")
        assert not is_ipv4_cidr("")
        assert not is_ipv4_cidr("01.2.3.4/24")


class TestValidateSubnet:
    """Tests for local subnet validation."""

    def test_valid_subnet(self):
        """Subnets should be normalized to the network address."""
        assert validate_subnet("192.168.1.0/24") == "192.168.1.0/24"
        assert validate_subnet("192.168.1.17/24") == "192.168.1.0/24"

    def test_invalid_subnet(self):
        """Garbage should fail."""
        with pytest.raises(ValidationError) as exc:
            validate_subnet("not-a-subnet")
        assert "Invalid local subnet" in str(exc.value)

    def test_rejects_allow_all(self):
        """0.0.0.0/0 would allow the whole internet."""
        with pytest.raises(ValidationError) as exc:
            validate_subnet("0.0.0.0/0")
        assert "ANYWHERE" in str(exc.value)


class TestValidateRegistryUrl:
    """Tests for the registry URL template."""

    def test_valid_template(self):
        """HTTPS template with placeholder should pass."""
        url = "https://stat.ripe.net/data/country-resource-list/data.json?resource={cc}"
        assert validate_registry_url(url) == url

    def test_missing_placeholder(self):
        """Template without {cc} should fail."""
        with pytest.raises(ValidationError) as exc:
            validate_registry_url("https://stat.ripe.net/data.json?resource=US")
        assert "placeholder" in str(exc.value)

    def test_bad_scheme(self):
        """Non-HTTP schemes should fail."""
        with pytest.raises(ValidationError):
            validate_registry_url("ftp://example.com/{cc}")
