"""Address-set sizing.

Country lists range from tens to hundreds of thousands of prefixes. A hash
table that is too small degrades lookups, one that is too large wastes
kernel memory, so both parameters follow the prefix count.
"""

from dataclasses import dataclass


MIN_HASH_SIZE = 512


@dataclass(frozen=True)
class SetSize:
    """ipset creation parameters."""
    hash_size: int
    max_elements: int


def size(prefix_count: int) -> SetSize:
    """Compute hashsize and maxelem for a set holding prefix_count entries.

    max_elements is the smallest power of two >= prefix_count (at least 2),
    hash_size is max(512, max_elements / 4).

    Raises:
        ValueError: If prefix_count is not positive
    """
    if prefix_count < 1:
        raise ValueError(f"prefix count must be positive, got {prefix_count}")

    max_elements = max(2, 1 << (prefix_count - 1).bit_length())
    return SetSize(
        hash_size=max(MIN_HASH_SIZE, max_elements // 4),
        max_elements=max_elements,
    )
