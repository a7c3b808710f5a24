"""Expansion of recurring booking patterns into concrete occurrences."""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from scheduling.models import parse_iso

logger = logging.getLogger(__name__)

FREQUENCIES = ('daily', 'weekly')
DEFAULT_COUNT = 4
MAX_OCCURRENCES = 52
# Bound on days scanned when only an end date limits the series
MAX_SPAN_DAYS = 2 * 366


@dataclass
class RecurrencePattern:
    """
    How often a booking repeats.

    days_of_week uses 0 = Sunday. When neither count nor end_date is given
    the series has DEFAULT_COUNT occurrences; when both are given it stops
    at whichever comes first.
    """
    frequency: str = 'weekly'
    interval: int = 1
    days_of_week: Optional[List[int]] = None
    count: Optional[int] = None
    end_date: Optional[date] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RecurrencePattern':
        """
        Build a pattern from its JSON form.

        Raises:
            ValueError: If any field is missing its expected type or range
        """
        if not isinstance(data, dict):
            raise ValueError('pattern must be an object')

        frequency = data.get('frequency') or 'weekly'
        if frequency not in FREQUENCIES:
            raise ValueError(f"frequency must be one of {', '.join(FREQUENCIES)}")

        days = data.get('daysOfWeek')
        if days is not None:
            if not isinstance(days, list) or not all(_is_int(day) and 0 <= day <= 6 for day in days):
                raise ValueError('daysOfWeek must be a list of days 0 (Sunday) to 6')
            days = sorted(set(days)) or None

        end_date = None
        if data.get('endDate'):
            try:
                end_date = parse_iso(str(data['endDate'])).date()
            except ValueError as e:
                raise ValueError(f"endDate is not an ISO date: {data['endDate']}") from e

        return cls(
            frequency=frequency,
            interval=_positive_int(data, 'interval', 1),
            days_of_week=days,
            count=_positive_int(data, 'count', None),
            end_date=end_date
        )

    def occurrences(self, start: str, end: str) -> List[Tuple[str, str]]:
        """
        Expand the pattern into (start, end) pairs, first occurrence first.

        Every occurrence keeps the duration and time of day of start.

        Args:
            start: First occurrence start (ISO 8601)
            end: First occurrence end (ISO 8601)

        Returns:
            List of (start, end) ISO strings, at most MAX_OCCURRENCES long

        Raises:
            ValueError: If the times do not parse or end is not after start
        """
        first = parse_iso(start)
        duration = parse_iso(end) - first
        if duration <= timedelta(0):
            raise ValueError('end must be after start')

        limit = MAX_OCCURRENCES
        if self.count is not None or self.end_date is None:
            limit = min(self.count or DEFAULT_COUNT, MAX_OCCURRENCES)

        utc_suffix = start.endswith('Z')
        results = []
        for moment in self._moments(first):
            if self.end_date is not None and moment.date() > self.end_date:
                break
            results.append((_format(moment, utc_suffix), _format(moment + duration, utc_suffix)))
            if len(results) >= limit:
                break

        logger.info(
            f"Expanded {self.frequency} pattern from {start} into {len(results)} occurrences"
        )
        return results

    def _moments(self, first: datetime):
        if self.frequency == 'daily':
            for offset in range(0, MAX_SPAN_DAYS + 1, self.interval):
                yield first + timedelta(days=offset)
            return

        days = self.days_of_week or [_weekday(first)]
        # Weeks run Sunday to Saturday, counted from the week of the first occurrence
        week_start = first.date() - timedelta(days=_weekday(first))
        for offset in range(MAX_SPAN_DAYS * self.interval + 1):
            moment = first + timedelta(days=offset)
            week = (moment.date() - week_start).days // 7
            if week % self.interval == 0 and _weekday(moment) in days:
                yield moment


def _weekday(value: datetime) -> int:
    # isoweekday(): Monday = 1 .. Sunday = 7
    return value.isoweekday() % 7


def _format(value: datetime, utc_suffix: bool) -> str:
    text = value.isoformat()
    if utc_suffix and text.endswith('+00:00'):
        return text[:-6] + 'Z'
    return text


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _positive_int(data: Dict[str, Any], name: str, default: Optional[int]) -> Optional[int]:
    value = data.get(name)
    if value is None:
        return default
    if not _is_int(value) or value < 1:
        raise ValueError(f"{name} must be a positive integer")
    return value
