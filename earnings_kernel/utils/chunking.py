"""Split large identifier lists for bounded ``IN (...)`` queries."""

from collections.abc import Iterator, Sequence
from typing import TypeVar

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 1000


def chunked(items: Sequence[T], size: int = DEFAULT_CHUNK_SIZE) -> Iterator[list[T]]:
    """
    Yield consecutive slices of ``items`` holding at most ``size`` elements.

    Every element appears in exactly one chunk and order is preserved, so
    summing a per-chunk aggregate gives the same result as aggregating the
    whole list.

    Raises:
        ValueError: If size < 1.
    """
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    items = list(items)
    for start in range(0, len(items), size):
        yield items[start:start + size]
