"""NTFS timestamp conversion."""

from __future__ import annotations

#: 100-nanosecond intervals between 1601-01-01 and 1970-01-01.
NTFS_EPOCH_OFFSET = (369 * 365 + 89) * 24 * 3600 * 10_000_000

_TICKS_PER_SECOND = 10_000_000
_UINT64_MASK = (1 << 64) - 1


def ntfs_to_unix(timestamp: int) -> int:
    """Convert an NTFS timestamp to seconds since the Unix epoch.

    The subtraction is done on unsigned 64-bit values, as on disk, so
    timestamps before 1970 wrap around instead of going negative.
    """
    return ((timestamp - NTFS_EPOCH_OFFSET) & _UINT64_MASK) // _TICKS_PER_SECOND