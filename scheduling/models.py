"""Data models for slot statistics and candidate time slots."""
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

DAY_NAMES = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat']
PREFERENCE_SCHEMA_VERSION = 1


def now_ms() -> int:
    """Return the current time as epoch milliseconds."""
    return int(time.time() * 1000)


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp, accepting a trailing 'Z'.

    Args:
        value: ISO 8601 string (e.g. "2024-05-06T07:00:00Z")

    Returns:
        datetime object (timezone-aware when the string carries an offset)

    Raises:
        ValueError: If the string is not a valid ISO 8601 timestamp
    """
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


class SlotAction(Enum):
    """Outcome recorded against a slot identity."""
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SlotId:
    """Recurring slot identity: day of week (0 = Sunday) and hour of day."""
    day_of_week: int
    hour: int

    def __post_init__(self):
        if not 0 <= self.day_of_week <= 6:
            raise ValueError(f"day_of_week out of range: {self.day_of_week}")
        if not 0 <= self.hour <= 23:
            raise ValueError(f"hour out of range: {self.hour}")

    def __str__(self) -> str:
        return f"{DAY_NAMES[self.day_of_week]}_{self.hour:02d}"

    @classmethod
    def parse(cls, slot_id: str) -> 'SlotId':
        """
        Parse a slot identity string such as 'thu_07'.

        Raises:
            ValueError: If the string is not a valid slot identity
        """
        try:
            day, hour = slot_id.strip().lower().split('_')
            return cls(day_of_week=DAY_NAMES.index(day), hour=int(hour))
        except (AttributeError, ValueError) as e:
            raise ValueError(f"Invalid slot id: {slot_id!r}") from e

    @classmethod
    def from_datetime(cls, value: datetime) -> 'SlotId':
        # isoweekday(): Monday = 1 .. Sunday = 7
        return cls(day_of_week=value.isoweekday() % 7, hour=value.hour)

    @classmethod
    def from_iso(cls, value: str) -> 'SlotId':
        return cls.from_datetime(parse_iso(value))


@dataclass
class SlotStat:
    """Historical outcome counters for one slot identity."""
    slot_id: str
    total_scheduled: int = 0
    total_completed: int = 0
    total_cancelled: int = 0
    last_updated: Optional[int] = None

    @property
    def success_rate(self) -> float:
        """
        Completed over scheduled, 0 when nothing was scheduled.

        Capped at 1.0 because completions can be recorded for a slot without
        a matching scheduled record.
        """
        if self.total_scheduled <= 0:
            return 0.0
        return min(1.0, self.total_completed / self.total_scheduled)


@dataclass
class LearningPreference:
    """Per-user flag gating whether slot statistics are recorded."""
    user_id: str
    learning_enabled: bool = True
    last_changed: Optional[int] = None
    schema_version: int = PREFERENCE_SCHEMA_VERSION


@dataclass
class CandidateSlot:
    """Candidate availability window returned by the calendar."""
    start: str
    end: str
    label: Optional[str] = None
    score: Optional[float] = None
    day_label: Optional[str] = None
    days_from_now: Optional[int] = None
    snapshot_timestamp: Optional[int] = None

    @property
    def slot_id(self) -> SlotId:
        return SlotId.from_iso(self.start)

    def to_dict(self) -> dict:
        data = {
            'start': self.start,
            'end': self.end,
            'snapshotTimestamp': self.snapshot_timestamp,
        }
        if self.label is not None:
            data['label'] = self.label
        if self.score is not None:
            data['score'] = self.score
        if self.day_label is not None:
            data['dayLabel'] = self.day_label
        if self.days_from_now is not None:
            data['daysFromNow'] = self.days_from_now
        return data


@dataclass
class AvailabilityBatch:
    """One availability lookup: candidate slots plus the snapshot timestamp."""
    timestamp: int
    slots: List[CandidateSlot] = field(default_factory=list)
