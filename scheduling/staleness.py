"""Staleness check for client-held availability snapshots."""
from typing import Optional

MAX_SNAPSHOT_AGE_MS = 5 * 60 * 1000


def is_valid(
    timestamp: Optional[int],
    now: int,
    max_age: int = MAX_SNAPSHOT_AGE_MS
) -> bool:
    """
    Decide whether an availability snapshot is still trustworthy.

    A snapshot exactly max_age old is still valid. Timestamps in the future
    are accepted without an upper bound to tolerate client clock skew.

    Args:
        timestamp: Snapshot time in epoch milliseconds, or None if absent
        now: Current time in epoch milliseconds
        max_age: Maximum allowed age in milliseconds (default: 5 minutes)

    Returns:
        True if the snapshot may be booked against, False otherwise
    """
    if timestamp is None:
        return False
    return now - timestamp <= max_age
