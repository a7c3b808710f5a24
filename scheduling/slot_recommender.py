"""Ranks candidate time slots using historical slot statistics."""
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from scheduling.models import CandidateSlot, SlotStat, now_ms, parse_iso
from scheduling.scoring import ranking_score

logger = logging.getLogger(__name__)


def _start_key(value: str) -> datetime:
    """Parse a start time for ordering; naive times are taken as UTC."""
    start = parse_iso(value)
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return start


class SlotRecommender:
    """Orders availability windows by their historical ranking score."""

    def rank(
        self,
        candidates: List[CandidateSlot],
        stats_by_slot_id: Dict[str, SlotStat],
        min_threshold: float = 0,
        now: Optional[int] = None
    ) -> List[CandidateSlot]:
        """
        Score, filter and sort candidate slots.

        Slots without statistics score 0. Ties are broken by ascending start
        time; the sort is stable so identical input always yields identical
        output. Candidates whose start cannot be parsed are skipped.

        Args:
            candidates: Candidate slots from the calendar
            stats_by_slot_id: Slot statistics keyed by slot id string
            min_threshold: Minimum score a slot needs to be kept
            now: Current time in epoch milliseconds (default: wall clock)

        Returns:
            New list of scored CandidateSlot objects, best first
        """
        if now is None:
            now = now_ms()

        scored = []
        for candidate in candidates:
            try:
                slot_id = candidate.slot_id
                start = _start_key(candidate.start)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Skipping candidate slot {candidate.start!r}: {e}")
                continue

            stat = stats_by_slot_id.get(str(slot_id))
            score = ranking_score(stat, now) if stat else 0.0
            if score < min_threshold:
                continue
            scored.append((-score, start, replace(candidate, score=score)))

        scored.sort(key=lambda entry: entry[:2])
        ranked = [slot for _, _, slot in scored]

        logger.info(
            f"Ranked {len(ranked)} of {len(candidates)} candidate slots "
            f"(min_threshold={min_threshold})"
        )
        return ranked
