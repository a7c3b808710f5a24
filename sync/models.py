"""Data models for booking sync events."""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from sync.errors import USER_MESSAGES, CalendarApiError, ErrorType


class SyncStatus(Enum):
    """Lifecycle states of a sync event."""
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    CONFLICT = "conflict"
    RETRY = "retry"


TERMINAL_STATUSES = (SyncStatus.SYNCED, SyncStatus.CONFLICT)


class Trigger(Enum):
    """Inputs that drive a sync event transition."""
    BOOKING_SUCCEEDED = "booking_succeeded"
    BOOKING_FAILED = "booking_failed"
    RETRY_SCHEDULED = "retry_scheduled"


def new_event_id() -> str:
    return str(uuid.uuid4())


@dataclass
class SyncEvent:
    """Locally tracked record of one booking attempt."""
    user_id: str
    event_id: str
    title: str
    start: str
    end: str
    status: SyncStatus
    created_at: int
    snapshot_timestamp: Optional[int] = None
    action: str = "create"
    external_id: Optional[str] = None
    link: Optional[str] = None
    last_synced_at: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_retryable: bool = False
    retry_count: int = 0
    next_retry_at: Optional[int] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict:
        """Convert to the camelCase record shape returned by the API."""
        data = {
            'eventId': self.event_id,
            'title': self.title,
            'startTime': self.start,
            'endTime': self.end,
            'status': self.status.value,
            'action': self.action,
            'retryCount': self.retry_count,
            'createdAt': self.created_at,
            'lastSyncedAt': self.last_synced_at,
            'snapshotTimestamp': self.snapshot_timestamp,
        }

        # Add optional fields if present
        if self.external_id:
            data['externalId'] = self.external_id
        if self.link:
            data['link'] = self.link
        if self.error_code:
            data['errorCode'] = self.error_code
        if self.error_message:
            data['errorMessage'] = self.error_message
        if self.next_retry_at is not None:
            data['nextRetryAt'] = self.next_retry_at

        return data


@dataclass
class ExternalEventRef:
    """Reference to an event created in the external calendar."""
    external_id: str
    link: Optional[str] = None


@dataclass
class Transition:
    """One trigger plus the data the target state needs."""
    trigger: Trigger
    external_id: Optional[str] = None
    link: Optional[str] = None
    error_type: Optional[ErrorType] = None
    error_message: Optional[str] = None
    error_retryable: bool = False
    next_retry_at: Optional[int] = None

    @classmethod
    def succeeded(cls, ref: ExternalEventRef) -> 'Transition':
        return cls(
            trigger=Trigger.BOOKING_SUCCEEDED,
            external_id=ref.external_id,
            link=ref.link
        )

    @classmethod
    def failed(cls, error: CalendarApiError) -> 'Transition':
        return cls(
            trigger=Trigger.BOOKING_FAILED,
            error_type=error.error_type,
            error_message=error.message,
            error_retryable=error.retryable
        )

    @classmethod
    def retry_scheduled(cls, next_retry_at: int) -> 'Transition':
        return cls(trigger=Trigger.RETRY_SCHEDULED, next_retry_at=next_retry_at)


@dataclass
class BookingResult:
    """Typed outcome of a booking or retry attempt."""
    success: bool
    event_id: Optional[str] = None
    status: Optional[SyncStatus] = None
    link: Optional[str] = None
    error_type: Optional[ErrorType] = None
    message: Optional[str] = None
    requires_reconnect: bool = False
    retryable: bool = False
    next_retry_at: Optional[int] = None

    @classmethod
    def synced(cls, event: SyncEvent) -> 'BookingResult':
        return cls(
            success=True,
            event_id=event.event_id,
            status=event.status,
            link=event.link
        )

    @classmethod
    def failure(
        cls,
        event: SyncEvent,
        error_type: ErrorType,
        message: Optional[str] = None,
        retryable: bool = False
    ) -> 'BookingResult':
        return cls(
            success=False,
            event_id=event.event_id,
            status=event.status,
            error_type=error_type,
            message=message or USER_MESSAGES[error_type],
            requires_reconnect=error_type == ErrorType.AUTH_ERROR,
            retryable=retryable
        )

    def to_dict(self) -> Dict:
        if self.success:
            return {
                'success': True,
                'eventId': self.event_id,
                'link': self.link,
            }

        data = {
            'success': False,
            'eventId': self.event_id,
            'status': self.status.value if self.status else None,
            'errorType': self.error_type.value if self.error_type else None,
            'message': self.message,
        }
        if self.requires_reconnect:
            data['requiresReconnect'] = True
        if self.next_retry_at is not None:
            data['nextRetryAt'] = self.next_retry_at
        return data


@dataclass
class SyncStatusSummary:
    """Per-status counts of a user's sync events."""
    total: int = 0
    counts: Dict[str, int] = field(
        default_factory=lambda: {status.value: 0 for status in SyncStatus}
    )
    last_synced_at: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            'total': self.total,
            **self.counts,
            'lastSyncedAt': self.last_synced_at,
        }
