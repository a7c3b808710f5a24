"""Slot scoring functions.

effectiveness() is the bounded 0-100 score shown to users. ranking_score()
is only used to order candidate slots and is not a percentage.
"""
import math
from typing import Optional

from scheduling.models import SlotStat, now_ms

RECENCY_WINDOW_MS = 7 * 24 * 60 * 60 * 1000
CONSISTENCY_MIN_SCHEDULED = 5


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def effectiveness(scheduled: int, completed: int, cancelled: int) -> int:
    """
    Score how well a slot converts bookings into completions.

    Args:
        scheduled: Total times the slot was scheduled
        completed: Total completions
        cancelled: Total cancellations

    Returns:
        Integer score between 0 and 100
    """
    if scheduled > 0:
        completion_rate = completed / scheduled
        cancellation_rate = cancelled / scheduled
    else:
        completion_rate = 0.0
        cancellation_rate = 0.0

    base = completion_rate * 100
    cancellation_penalty = cancellation_rate * 25
    usage_bonus = min(scheduled / 5, 10)

    result = max(0.0, min(100.0, base - cancellation_penalty + usage_bonus))
    return round_half_up(result)


def ranking_score(stat: SlotStat, now: Optional[int] = None) -> float:
    """
    Ordering score for a slot: success rate on a 0-10 scale plus bonuses.

    Args:
        stat: Historical statistics for the slot identity
        now: Current time in epoch milliseconds (default: wall clock)

    Returns:
        Score between 0 and 11
    """
    if now is None:
        now = now_ms()

    score = float(round_half_up(stat.success_rate * 10))

    if stat.last_updated is not None and now - stat.last_updated < RECENCY_WINDOW_MS:
        score += 0.5

    if stat.total_scheduled > CONSISTENCY_MIN_SCHEDULED:
        score += 0.5

    return score
