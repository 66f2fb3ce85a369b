"""Unit tests for address-set sizing."""

import pytest

from geoallow.services.sizing import MIN_HASH_SIZE, SetSize, size


class TestSize:
    """Tests for size()."""

    def test_exact_power_of_two(self):
        """A power of two should size to itself."""
        assert size(512) == SetSize(hash_size=512, max_elements=512)

    def test_rounds_up(self):
        """Counts between powers of two should round up."""
        assert size(500).max_elements == 512
        assert size(800).max_elements == 1024
        assert size(513).max_elements == 1024

    def test_hash_size_floor(self):
        """Small sets should keep the minimum hash size."""
        assert size(800).hash_size == MIN_HASH_SIZE
        assert size(2048).hash_size == MIN_HASH_SIZE

    def test_hash_size_is_quarter(self):
        """Large sets should use a quarter of max_elements."""
        result = size(100_000)
        assert result.max_elements == 131072
        assert result.hash_size == 32768

    def test_single_prefix(self):
        """One prefix should still get a usable set."""
        assert size(1) == SetSize(hash_size=MIN_HASH_SIZE, max_elements=2)
        assert size(2).max_elements == 2
        assert size(3).max_elements == 4

    def test_max_elements_covers_count(self):
        """max_elements should always be a power of two >= count."""
        for count in (1, 7, 100, 999, 4096, 65537):
            result = size(count)
            assert result.max_elements >= count
            assert result.max_elements & (result.max_elements - 1) == 0

    def test_non_positive_rejected(self):
        """Zero and negative counts should fail."""
        for count in (0, -1):
            with pytest.raises(ValueError):
                size(count)

    def test_frozen(self):
        """SetSize should be immutable."""
        result = size(10)
        with pytest.raises(AttributeError):
            result.max_elements = 1
