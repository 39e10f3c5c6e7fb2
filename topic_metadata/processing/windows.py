"""Fixed-size windows over the pending topic sequence."""

from typing import Iterator, Sequence, TypeVar

T = TypeVar('T')


def iter_windows(items: Sequence[T], window_size: int) -> Iterator[list[T]]:
    """Yield consecutive, non-overlapping slices of ``items`` in order.

    Every item appears in exactly one window; only the last may be short.
    """
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")
    for start in range(0, len(items), window_size):
        yield list(items[start:start + window_size])


def count_windows(total: int, window_size: int) -> int:
    """Number of windows ``iter_windows`` yields for ``total`` items."""
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")
    return -(-total // window_size)
